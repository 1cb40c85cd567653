"""initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id():
    return sa.Column("id", sa.String(36), primary_key=True)


def _ts(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    # Demand radar
    op.create_table(
        "demand_signals",
        _id(),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("keyword", sa.String(200), nullable=False),
        sa.Column("signal_text", sa.Text(), nullable=False),
        sa.Column("signal_volume", sa.Integer(), nullable=False),
        sa.Column("velocity_score", sa.Numeric(10, 4), nullable=False),
        _ts("detected_at"),
        _ts("created_at"),
    )
    op.create_index("idx_signal_keyword", "demand_signals", ["keyword"])
    op.create_index("idx_signal_created", "demand_signals", ["created_at"])

    op.create_table(
        "classified_intents",
        _id(),
        sa.Column("signal_id", sa.String(36), sa.ForeignKey("demand_signals.id"), nullable=False, unique=True),
        sa.Column("intent_level", sa.String(30), nullable=False),
        sa.Column("confidence_score", sa.Numeric(6, 4), nullable=False),
        sa.Column("analysis_reasoning", sa.Text()),
        sa.Column("keywords_matched", sa.Text()),
        _ts("created_at"),
    )

    op.create_table(
        "trend_predictions",
        _id(),
        sa.Column("intent_id", sa.String(36), sa.ForeignKey("classified_intents.id"), nullable=False, unique=True),
        sa.Column("trend_score", sa.Numeric(6, 2), nullable=False),
        sa.Column("momentum_index", sa.Numeric(6, 2), nullable=False),
        sa.Column("predicted_growth_rate", sa.Numeric(6, 2), nullable=False),
        _ts("created_at"),
    )

    # Catalog
    op.create_table(
        "sellers",
        _id(),
        sa.Column("business_name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("stripe_account_id", sa.String(100), nullable=True),
        _ts("created_at"),
    )

    op.create_table(
        "api_products",
        _id(),
        sa.Column("seller_id", sa.String(36), sa.ForeignKey("sellers.id"), nullable=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("api_endpoint", sa.String(500)),
        sa.Column("request_method", sa.String(10), nullable=False),
        sa.Column("request_headers", sa.Text()),
        sa.Column("auth_method", sa.String(20), nullable=False),
        sa.Column("auth_credentials", sa.Text()),
        sa.Column("price_per_call", sa.Numeric(12, 6), nullable=False),
        sa.Column("rate_limit_per_minute", sa.Integer(), nullable=False),
        sa.Column("rate_limit_per_hour", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("active_consumers", sa.Integer(), nullable=False),
        sa.Column("total_calls", sa.Integer(), nullable=False),
        sa.Column("successful_calls", sa.Integer(), nullable=False),
        sa.Column("failed_calls", sa.Integer(), nullable=False),
        sa.Column("total_revenue", sa.Numeric(18, 6), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("idx_product_active", "api_products", ["is_active"])

    op.create_table(
        "api_usage_metrics",
        _id(),
        sa.Column("api_product_id", sa.String(36), sa.ForeignKey("api_products.id"), nullable=True),
        sa.Column("consumer_id", sa.String(36), nullable=True),
        _ts("time_window"),
        sa.Column("time_granularity", sa.String(10), nullable=False),
        sa.Column("call_count", sa.Integer(), nullable=False),
        sa.Column("success_count", sa.Integer(), nullable=False),
        sa.Column("error_count", sa.Integer(), nullable=False),
        sa.Column("avg_response_time_ms", sa.Integer(), nullable=False),
        sa.Column("total_cost", sa.Numeric(18, 6), nullable=False),
        _ts("created_at"),
    )
    op.create_index("idx_usage_consumer_window", "api_usage_metrics", ["consumer_id", "time_window"])
    op.create_index("idx_usage_product_window", "api_usage_metrics", ["api_product_id", "time_window"])

    # Workers
    op.create_table(
        "autonomous_agents",
        _id(),
        sa.Column("agent_name", sa.String(100), nullable=False),
        sa.Column("agent_type", sa.String(30), nullable=False),
        sa.Column("capabilities", sa.Text()),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("performance_score", sa.Numeric(6, 4), nullable=False),
        sa.Column("success_rate", sa.Numeric(6, 4), nullable=False),
        sa.Column("daily_budget", sa.Numeric(12, 2), nullable=False),
        sa.Column("wallet_address", sa.String(120)),
        sa.Column("current_task_id", sa.String(36), nullable=True),
        sa.Column("error_count", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("total_tasks_completed", sa.Integer(), nullable=False),
        sa.Column("total_tasks_failed", sa.Integer(), nullable=False),
        sa.Column("total_revenue_generated", sa.Numeric(18, 6), nullable=False),
        _ts("last_active_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint(
            "performance_score >= 0 AND performance_score <= 1",
            name="ck_agent_performance_range",
        ),
    )
    op.create_index("idx_agent_type_status", "autonomous_agents", ["agent_type", "status"])

    # Opportunities and offers
    op.create_table(
        "demand_opportunities",
        _id(),
        sa.Column("signal_id", sa.String(36), sa.ForeignKey("demand_signals.id"), nullable=False, unique=True),
        sa.Column("intent_id", sa.String(36), sa.ForeignKey("classified_intents.id"), nullable=False),
        sa.Column("prediction_id", sa.String(36), sa.ForeignKey("trend_predictions.id"), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("keywords", sa.Text()),
        sa.Column("demand_score", sa.Numeric(5, 1), nullable=False),
        sa.Column("temperature", sa.String(10), nullable=False),
        sa.Column("urgency_score", sa.Numeric(6, 2), nullable=False),
        sa.Column("recommended_service", sa.String(50), nullable=False),
        sa.Column("suggested_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("estimated_delivery_days", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("idx_demand_opp_status", "demand_opportunities", ["status"])
    op.create_index("idx_demand_opp_score", "demand_opportunities", ["demand_score"])

    op.create_table(
        "market_opportunities",
        _id(),
        sa.Column("api_product_id", sa.String(36), sa.ForeignKey("api_products.id"), nullable=False),
        sa.Column("demand_score", sa.Numeric(6, 2), nullable=False),
        sa.Column("competition_score", sa.Numeric(6, 2), nullable=False),
        sa.Column("complexity_score", sa.Numeric(6, 2), nullable=False),
        sa.Column("potential_revenue", sa.Numeric(14, 2), nullable=False),
        sa.Column("estimated_cost", sa.Numeric(14, 2), nullable=False),
        _ts("time_window_start"),
        _ts("time_window_end"),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("analysis_json", sa.Text()),
        _ts("created_at"),
    )
    op.create_index("idx_market_opp_product", "market_opportunities", ["api_product_id"])
    op.create_index("idx_market_opp_status", "market_opportunities", ["status"])

    op.create_table(
        "service_offers",
        _id(),
        sa.Column(
            "demand_opportunity_id", sa.String(36),
            sa.ForeignKey("demand_opportunities.id"), nullable=False,
        ),
        sa.Column("offer_type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("delivery_days", sa.Integer(), nullable=False),
        sa.Column("copy_template", sa.Text()),
        sa.Column("status", sa.String(20), nullable=False),
        _ts("published_at", nullable=True),
        _ts("created_at"),
    )
    op.create_index("idx_offer_opportunity", "service_offers", ["demand_opportunity_id"])

    op.create_table(
        "marketplace_listings",
        _id(),
        sa.Column("agent_id", sa.String(36), sa.ForeignKey("autonomous_agents.id"), nullable=True),
        sa.Column("offer_id", sa.String(36), sa.ForeignKey("service_offers.id"), nullable=True),
        sa.Column("api_product_id", sa.String(36), sa.ForeignKey("api_products.id"), nullable=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("short_description", sa.String(500)),
        sa.Column("description", sa.Text()),
        sa.Column("category", sa.String(50), nullable=False),
        sa.Column("tags", sa.Text()),
        sa.Column("price_per_execution", sa.Numeric(12, 2), nullable=False),
        sa.Column("min_credits_required", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("is_public", sa.Boolean(), nullable=False),
        sa.Column("is_featured", sa.Boolean(), nullable=False),
        sa.Column("execution_count", sa.Integer(), nullable=False),
        sa.Column("total_revenue", sa.Numeric(18, 6), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("offer_id", name="uq_listing_offer"),
    )
    op.create_index("idx_listing_status", "marketplace_listings", ["status", "is_public"])

    op.create_table(
        "brain_tasks",
        _id(),
        sa.Column("task_type", sa.String(30), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("opportunity_id", sa.String(36), nullable=True),
        sa.Column("opportunity_kind", sa.String(10), nullable=False),
        sa.Column("target_api_id", sa.String(36), sa.ForeignKey("api_products.id"), nullable=True),
        sa.Column("assigned_agent_id", sa.String(36), sa.ForeignKey("autonomous_agents.id"), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("allocated_budget", sa.Numeric(12, 6), nullable=False),
        sa.Column("expected_revenue", sa.Numeric(14, 2), nullable=False),
        _ts("deadline", nullable=True),
        sa.Column("result_json", sa.Text()),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("priority >= 1 AND priority <= 5", name="ck_task_priority_range"),
    )
    op.create_index("idx_task_status", "brain_tasks", ["status"])
    op.create_index("idx_task_agent", "brain_tasks", ["assigned_agent_id"])

    # Client access
    op.create_table(
        "api_keys",
        _id(),
        sa.Column("key_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("key_prefix", sa.String(12), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("owner_id", sa.String(100), nullable=False),
        sa.Column("permissions", sa.Text()),
        sa.Column("rate_limit_per_minute", sa.Integer(), nullable=False),
        sa.Column("rate_limit_per_hour", sa.Integer(), nullable=False),
        sa.Column("daily_budget", sa.Numeric(18, 6), nullable=False),
        sa.Column("daily_spent", sa.Numeric(18, 6), nullable=False),
        sa.Column("daily_spent_date", sa.String(10), nullable=True),
        sa.Column("total_spent", sa.Numeric(18, 6), nullable=False),
        sa.Column("total_executions", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _ts("expires_at", nullable=True),
        _ts("last_used_at", nullable=True),
        _ts("created_at"),
        sa.CheckConstraint("daily_spent >= 0", name="ck_api_key_spent_nonneg"),
    )
    op.create_index("idx_api_key_owner", "api_keys", ["owner_id"])

    # Executions
    op.create_table(
        "executions",
        _id(),
        sa.Column("agent_id", sa.String(36), sa.ForeignKey("autonomous_agents.id"), nullable=False),
        sa.Column("api_product_id", sa.String(36), sa.ForeignKey("api_products.id"), nullable=True),
        sa.Column("task_id", sa.String(36), sa.ForeignKey("brain_tasks.id"), nullable=True),
        sa.Column("api_key_id", sa.String(36), sa.ForeignKey("api_keys.id"), nullable=True),
        sa.Column("listing_id", sa.String(36), sa.ForeignKey("marketplace_listings.id"), nullable=True),
        sa.Column("user_id", sa.String(100), nullable=True),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("task_type", sa.String(30), nullable=True),
        sa.Column("request_payload", sa.Text()),
        sa.Column("result_json", sa.Text()),
        sa.Column("cost", sa.Numeric(18, 6), nullable=False),
        sa.Column("revenue", sa.Numeric(18, 6), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("response_time_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _ts("started_at", nullable=True),
        _ts("completed_at", nullable=True),
        _ts("created_at"),
    )
    op.create_index("idx_execution_status", "executions", ["status"])
    op.create_index("idx_execution_agent", "executions", ["agent_id", "created_at"])
    op.create_index("idx_execution_key", "executions", ["api_key_id"])

    op.create_table(
        "execution_logs",
        _id(),
        sa.Column("execution_id", sa.String(36), sa.ForeignKey("executions.id"), nullable=False),
        sa.Column("api_key_id", sa.String(36), nullable=True),
        sa.Column("step", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("details", sa.Text()),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        _ts("created_at"),
    )
    op.create_index("idx_exec_log_execution", "execution_logs", ["execution_id", "created_at"])
    op.create_index("idx_exec_log_key", "execution_logs", ["api_key_id", "created_at"])

    # Money
    op.create_table(
        "revenue_records",
        _id(),
        sa.Column("agent_id", sa.String(36), sa.ForeignKey("autonomous_agents.id"), nullable=True),
        sa.Column("task_id", sa.String(36), nullable=True),
        sa.Column("execution_id", sa.String(36), sa.ForeignKey("executions.id"), nullable=True),
        sa.Column("revenue_source", sa.String(30), nullable=False),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("platform_fee", sa.Numeric(18, 6), nullable=False),
        sa.Column("seller_amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("agent_reward", sa.Numeric(18, 6), nullable=False),
        sa.Column("currency", sa.String(10), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("metadata_json", sa.Text()),
        _ts("collected_at", nullable=True),
        _ts("created_at"),
    )
    op.create_index("idx_revenue_created", "revenue_records", ["created_at"])
    op.create_index("idx_revenue_source", "revenue_records", ["revenue_source"])

    op.create_table(
        "payments",
        _id(),
        sa.Column("execution_id", sa.String(36), sa.ForeignKey("executions.id"), nullable=True),
        sa.Column("revenue_record_id", sa.String(36), sa.ForeignKey("revenue_records.id"), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(100), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(10), nullable=False),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("description", sa.Text()),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("idx_payment_execution", "payments", ["execution_id"])

    op.create_table(
        "pending_payments",
        _id(),
        sa.Column("seller_id", sa.String(36), sa.ForeignKey("sellers.id"), nullable=True),
        sa.Column("execution_id", sa.String(36), nullable=True),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("currency", sa.String(10), nullable=False),
        sa.Column("payment_method", sa.String(20), nullable=False),
        sa.Column("purpose", sa.String(200)),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        _ts("next_retry_at", nullable=True),
        _ts("claimed_at", nullable=True),
        _ts("scheduled_for"),
        sa.Column("transaction_id", sa.String(100), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _ts("completed_at", nullable=True),
        _ts("created_at"),
    )
    op.create_index("idx_pending_payment_status", "pending_payments", ["status", "scheduled_for"])

    # Credits
    op.create_table(
        "user_wallets",
        _id(),
        sa.Column("user_id", sa.String(100), nullable=False, unique=True),
        sa.Column("balance_credits", sa.Numeric(18, 6), nullable=False),
        sa.Column("total_spent", sa.Numeric(18, 6), nullable=False),
        sa.Column("total_earned", sa.Numeric(18, 6), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("balance_credits >= 0", name="ck_wallet_balance_nonneg"),
    )

    op.create_table(
        "credit_transactions",
        _id(),
        sa.Column("wallet_id", sa.String(36), sa.ForeignKey("user_wallets.id"), nullable=False),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(10), nullable=False),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("source", sa.String(30), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("agent_id", sa.String(36), nullable=True),
        sa.Column("execution_id", sa.String(36), nullable=True),
        sa.Column("balance_before", sa.Numeric(18, 6), nullable=False),
        sa.Column("balance_after", sa.Numeric(18, 6), nullable=False),
        sa.Column("metadata_json", sa.Text()),
        _ts("created_at"),
        sa.UniqueConstraint("wallet_id", "sequence", name="uq_credit_tx_wallet_seq"),
        sa.CheckConstraint("amount > 0", name="ck_credit_tx_amount_pos"),
        sa.CheckConstraint("balance_after >= 0", name="ck_credit_tx_after_nonneg"),
    )
    op.create_index("idx_credit_tx_user", "credit_transactions", ["user_id", "created_at"])

    op.create_table(
        "credit_packs",
        _id(),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("credits_amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("bonus_credits", sa.Numeric(18, 6), nullable=False),
        sa.Column("price_usd", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        _ts("created_at"),
    )


def downgrade() -> None:
    for table in (
        "credit_packs",
        "credit_transactions",
        "user_wallets",
        "pending_payments",
        "payments",
        "revenue_records",
        "execution_logs",
        "executions",
        "api_keys",
        "brain_tasks",
        "marketplace_listings",
        "service_offers",
        "market_opportunities",
        "demand_opportunities",
        "autonomous_agents",
        "api_usage_metrics",
        "api_products",
        "sellers",
        "trend_predictions",
        "classified_intents",
        "demand_signals",
    ):
        op.drop_table(table)
