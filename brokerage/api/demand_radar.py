from typing import Annotated, Literal

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from brokerage.core.auth import get_current_operator
from brokerage.core.exceptions import ValidationFailedError
from brokerage.database import get_db
from brokerage.schemas.actions import (
    AutonomousCycleAction,
    DemandRadarAction,
    GenerateOfferAction,
    ProcessAction,
    ScanAction,
    SimulateAction,
)
from brokerage.services import demand_service

router = APIRouter(prefix="/demand-radar", tags=["demand-radar"])


def _signal_to_dict(signal) -> dict:
    return {
        "id": signal.id,
        "source": signal.source,
        "keyword": signal.keyword,
        "signal_text": signal.signal_text,
        "signal_volume": signal.signal_volume,
        "velocity_score": float(signal.velocity_score),
        "created_at": signal.created_at.isoformat() if signal.created_at else None,
    }


def _opportunity_to_dict(opportunity) -> dict:
    return {
        "id": opportunity.id,
        "signal_id": opportunity.signal_id,
        "title": opportunity.title,
        "demand_score": float(opportunity.demand_score),
        "temperature": opportunity.temperature,
        "urgency_score": float(opportunity.urgency_score or 0),
        "recommended_service": opportunity.recommended_service,
        "suggested_price": float(opportunity.suggested_price),
        "estimated_delivery_days": opportunity.estimated_delivery_days,
        "status": opportunity.status,
        "created_at": opportunity.created_at.isoformat() if opportunity.created_at else None,
    }


@router.post("")
async def demand_radar(
    req: Annotated[DemandRadarAction, Body(discriminator="action")],
    db: AsyncSession = Depends(get_db),
    operator_id: str = Depends(get_current_operator),
):
    try:
        if isinstance(req, ScanAction):
            signal = await demand_service.submit_signal(
                db,
                keyword=req.keyword,
                source=req.source,
                signal_text=req.signal_text,
                signal_volume=req.signal_volume,
                velocity_score=req.velocity_score,
            )
            return {"success": True, "signal": _signal_to_dict(signal)}

        if isinstance(req, SimulateAction):
            signals = await demand_service.generate_simulated_signals(db, req.count)
            return {"success": True, "signals_created": len(signals)}

        if isinstance(req, ProcessAction):
            results = await demand_service.process_signals(db, req.limit)
            return {
                "success": True,
                "processed": sum(1 for r in results if r["status"] == "processed"),
                "results": results,
            }

        if isinstance(req, GenerateOfferAction):
            offer = await demand_service.generate_offer(db, req.opportunity_id, req.auto_publish)
            return {
                "success": True,
                "offer": {
                    "id": offer.id,
                    "opportunity_id": offer.demand_opportunity_id,
                    "title": offer.title,
                    "offer_type": offer.offer_type,
                    "price": float(offer.price),
                    "delivery_days": offer.delivery_days,
                    "status": offer.status,
                },
            }

        if isinstance(req, AutonomousCycleAction):
            return {"success": True, **await demand_service.run_autonomous_cycle(db)}
    except ValueError as exc:
        raise ValidationFailedError(str(exc))

    raise ValidationFailedError("Unknown action")


@router.get("/status")
async def radar_status(
    db: AsyncSession = Depends(get_db),
    operator_id: str = Depends(get_current_operator),
):
    return await demand_service.get_radar_status(db)


@router.get("/signals")
async def recent_signals(
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    operator_id: str = Depends(get_current_operator),
):
    signals = await demand_service.list_signals(db, limit)
    return {"signals": [_signal_to_dict(s) for s in signals], "count": len(signals)}


@router.get("/opportunities")
async def opportunities(
    temperature: Literal["hot", "warm", "cold"] | None = None,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    operator_id: str = Depends(get_current_operator),
):
    items = await demand_service.list_opportunities(db, temperature, limit)
    return {"opportunities": [_opportunity_to_dict(o) for o in items], "count": len(items)}
