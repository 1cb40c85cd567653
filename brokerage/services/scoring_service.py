"""Pure scoring functions for the demand radar.

classify_intent -> predict_trend -> calculate_demand_score -> map_to_service.
None of these touch the database, so the pipeline can be replayed and tested
with plain values.
"""

from dataclasses import dataclass, field

from brokerage.config import settings

PURCHASE_KEYWORDS = ["urgent", "need", "buy", "hire", "budget", "pay", "asap", "looking for"]
RESEARCH_KEYWORDS = ["how to", "best", "compare", "review", "which"]
SOLUTION_KEYWORDS = ["integration", "api", "service", "solution", "tool"]
CURIOSITY_KEYWORDS = ["what is", "learn", "understand", "about"]

# (intent level, keywords, weight per match); list order breaks score ties
_BUCKETS = (
    ("purchase_intent", PURCHASE_KEYWORDS, 0.25),
    ("solution_search", SOLUTION_KEYWORDS, 0.15),
    ("research", RESEARCH_KEYWORDS, 0.2),
    ("curiosity", CURIOSITY_KEYWORDS, 0.1),
)

INTENT_LEVELS = tuple(level for level, _, _ in _BUCKETS)


@dataclass(frozen=True)
class IntentResult:
    intent_level: str
    confidence: float
    reasoning: str
    keywords_matched: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TrendResult:
    trend_score: float
    momentum_index: float
    predicted_growth_rate: float


@dataclass(frozen=True)
class ServiceMapping:
    service_type: str
    suggested_price: int
    delivery_days: int


# First match wins.
SERVICE_RULES = (
    (("api", "backend"), "api_on_demand", 500, 7),
    (("saas", "white label"), "white_label_saas", 2000, 14),
    (("ai", "automation"), "ai_automation", 800, 5),
    (("consult", "help"), "express_consulting", 200, 1),
)
DEFAULT_SERVICE = ("ready_backend", 600, 7)

TEMPERATURE_MULTIPLIERS = {"hot": 1.5, "warm": 1.2, "cold": 1.0}


def classify_intent(keyword: str, signal_text: str, velocity: float, volume: int) -> IntentResult:
    text = (signal_text or "").lower()
    kw = (keyword or "").lower()

    scores: dict[str, float] = {}
    matched: list[str] = []
    for level, terms, weight in _BUCKETS:
        score = 0.0
        for term in terms:
            if term in text or term in kw:
                score += weight
                matched.append(term)
        scores[level] = score

    if velocity > 2:
        scores["purchase_intent"] += 0.2
    if volume > 200:
        scores["purchase_intent"] += 0.15

    # max() returns the first maximal entry, so ties follow _BUCKETS order
    top_level = max(INTENT_LEVELS, key=lambda level: scores[level])
    confidence = round(min(0.95, max(0.3, scores[top_level] + 0.3)), 4)

    reasoning = (
        f"Classified as {top_level} with {round(confidence * 100)}% confidence. "
        f"Matched keywords: {', '.join(matched) or 'none'}. "
        f"Velocity: {velocity}, Volume: {volume}."
    )
    return IntentResult(top_level, confidence, reasoning, matched)


def normalize_volume(volume: int) -> float:
    return min(100.0, volume / settings.volume_ceiling * 100)


def predict_trend(velocity: float, volume: int, confidence: float) -> TrendResult:
    """Trend score from normalised volume and velocity momentum.

    ``confidence`` is accepted for parity with the pipeline call site; the
    current model weighs volume and momentum only.
    """
    normalized_volume = normalize_volume(volume)
    momentum = min(100.0, velocity * 20)
    trend_score = min(100.0, normalized_volume * 0.5 + momentum * 0.5)

    if velocity > 2:
        growth = 15.0
    elif velocity > 1:
        growth = 8.0
    else:
        growth = 3.0

    return TrendResult(
        trend_score=round(trend_score, 2),
        momentum_index=round(momentum, 2),
        predicted_growth_rate=growth,
    )


def temperature_for(score: float) -> str:
    if score >= 70:
        return "hot"
    if score >= 40:
        return "warm"
    return "cold"


def calculate_demand_score(volume: int, confidence: float, trend_score: float) -> tuple[float, str]:
    """Weighted demand score in [0, 100] and its temperature bucket."""
    score = (
        normalize_volume(volume) * 0.3
        + confidence * 100 * 0.4
        + trend_score * 0.3
    )
    score = round(min(100.0, max(0.0, score)), 1)
    return score, temperature_for(score)


def map_to_service(keyword: str, temperature: str) -> ServiceMapping:
    kw = (keyword or "").lower()
    service_type, base_price, delivery_days = DEFAULT_SERVICE
    for terms, rule_type, rule_price, rule_days in SERVICE_RULES:
        if any(term in kw for term in terms):
            service_type, base_price, delivery_days = rule_type, rule_price, rule_days
            break

    multiplier = TEMPERATURE_MULTIPLIERS.get(temperature, 1.0)
    return ServiceMapping(service_type, round(base_price * multiplier), delivery_days)
