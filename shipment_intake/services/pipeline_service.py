"""Per-document extraction pipeline.

    Uploaded -> TextExtracted -> Parsed -> Validated -> AutoApproved
                                                     -> PendingReview
                                                     -> Rejected

Every failure inside the pipeline ends in a terminal state with a reason; no
exception escapes ``ExtractionPipeline.run``. The pipeline holds no mutable
per-document state, so one instance serves any number of concurrent documents.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import TypeAdapter, ValidationError

from shipment_intake.config import settings
from shipment_intake.context import RequestContext
from shipment_intake.exceptions import ExtractionUnavailable, IntakeError, ParseFailure, TransientExtractionError
from shipment_intake.models.extraction import DocumentState, OutcomeReason
from shipment_intake.schemas.extraction import ExtractedItem, ExtractedShipmentData
from shipment_intake.services.extraction_client import TextExtractionCapability

logger = logging.getLogger(__name__)

_DATE = TypeAdapter(date)


@dataclass(frozen=True)
class Thresholds:
    auto_approve: float = 0.7
    review: float = 0.4
    total_tolerance: float = 0.01

    @classmethod
    def from_settings(cls) -> "Thresholds":
        return cls(
            auto_approve=settings.AUTO_APPROVE_THRESHOLD,
            review=settings.REVIEW_THRESHOLD,
            total_tolerance=settings.TOTAL_TOLERANCE,
        )


@dataclass
class PipelineOutcome:
    state: DocumentState
    reason: OutcomeReason | None = None
    extracted: ExtractedShipmentData | None = None
    violations: list[str] = field(default_factory=list)
    transitions: list[DocumentState] = field(default_factory=list)
    detail: str = ""

    @property
    def confidence(self) -> float:
        return self.extracted.overall_confidence if self.extracted else 0.0


# ---------------------------------------------------------------------------
# Payload mapping
# ---------------------------------------------------------------------------


def _pick(payload: dict, *names: str) -> Any:
    for name in names:
        if name in payload:
            return payload[name]
    return None


def _field(payload: dict, *names: str) -> tuple[Any, float | None]:
    """Return (value, confidence) for a field given as a scalar or {"value", "confidence"}."""
    raw = _pick(payload, *names)
    if isinstance(raw, dict):
        return raw.get("value"), raw.get("confidence")
    return raw, None


def _lenient_date(value: Any) -> date | None:
    if value in (None, ""):
        return None
    try:
        return _DATE.validate_python(value)
    except ValidationError:
        return None


def _money(value: Any) -> Decimal | None:
    if value in (None, ""):
        return None
    if isinstance(value, str):
        value = value.replace(",", "").replace("$", "").strip()
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation as e:
        raise ParseFailure(f"Invalid amount {value!r}") from e


def build_extracted(raw_text: str, payload: dict) -> ExtractedShipmentData:
    """Map the capability's JSON onto ExtractedShipmentData, or raise ParseFailure."""
    raw_items = _pick(payload, "items", "line_items")
    if raw_items is None:
        raw_items = []
    if not isinstance(raw_items, list):
        raise ParseFailure("'items' must be a list")

    try:
        items = []
        for raw in raw_items:
            if not isinstance(raw, dict):
                raise ParseFailure("Every item must be an object")
            items.append(ExtractedItem(
                description_text=str(_pick(raw, "description", "description_text", "descriptionText") or ""),
                quantity_guess=_pick(raw, "quantity", "quantity_guess", "quantityGuess"),
                unit_price_guess=_money(_pick(raw, "unit_price", "unit_price_guess", "unitPriceGuess")),
                confidence=_pick(raw, "confidence") or 0.0,
            ))

        customer, customer_conf = _field(payload, "customer_name", "customer_name_guess", "customerNameGuess")
        shipped, shipped_conf = _field(payload, "shipment_date", "shipment_date_guess", "shipmentDateGuess")
        total, total_conf = _field(payload, "total_amount", "total_amount_guess", "totalAmountGuess")
        overall = _pick(payload, "overall_confidence", "overallConfidence")
        if overall is None:
            # Without a model-reported figure, take the weakest signal we have
            known = [c for c in (customer_conf, total_conf) if c is not None] + [i.confidence for i in items]
            overall = min(known) if known else 0.0

        return ExtractedShipmentData(
            raw_text=raw_text,
            customer_name_guess=str(customer).strip() if customer else None,
            customer_name_confidence=customer_conf if customer_conf is not None else overall,
            shipment_date_guess=_lenient_date(shipped),
            shipment_date_confidence=(shipped_conf if shipped_conf is not None else overall) if shipped else 0.0,
            items=tuple(items),
            total_amount_guess=_money(total),
            total_amount_confidence=total_conf if total_conf is not None else overall,
            overall_confidence=overall,
        )
    except ValidationError as e:
        raise ParseFailure(f"Structured output failed schema validation: {e.error_count()} error(s)") from e


# ---------------------------------------------------------------------------
# Business rules and routing
# ---------------------------------------------------------------------------


def validate_shipment(extracted: ExtractedShipmentData, tolerance: float = 0.01) -> list[str]:
    """Confidence-independent checks. Any violation means the extraction is structurally broken."""
    violations = []
    if not extracted.items:
        violations.append("No line items were extracted")
    for n, item in enumerate(extracted.items, start=1):
        if item.quantity_guess is None or item.quantity_guess <= 0:
            violations.append(f"Line {n} has a non-positive quantity ({item.quantity_guess})")
        if item.unit_price_guess is not None and item.unit_price_guess < 0:
            violations.append(f"Line {n} has a negative unit price ({item.unit_price_guess})")

    priced = [i for i in extracted.items if i.unit_price_guess is not None and i.quantity_guess]
    if extracted.total_amount_guess is not None and priced and len(priced) == len(extracted.items):
        line_sum = sum((i.unit_price_guess * i.quantity_guess for i in priced), Decimal("0"))
        if abs(line_sum - extracted.total_amount_guess) > Decimal(str(tolerance)):
            violations.append(
                f"Total {extracted.total_amount_guess} does not match line items sum {line_sum}"
            )
    return violations


def route(
    extracted: ExtractedShipmentData, violations: list[str], thresholds: Thresholds
) -> tuple[DocumentState, OutcomeReason | None]:
    if violations:
        return DocumentState.PENDING_REVIEW, OutcomeReason.VALIDATION_FAILURE
    overall = extracted.overall_confidence
    if overall < thresholds.review:
        return DocumentState.REJECTED, OutcomeReason.LOW_CONFIDENCE
    if overall >= thresholds.auto_approve and all(i.confidence >= thresholds.auto_approve for i in extracted.items):
        return DocumentState.AUTO_APPROVED, None
    return DocumentState.PENDING_REVIEW, OutcomeReason.LOW_CONFIDENCE


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class ExtractionPipeline:
    def __init__(
        self,
        capability: TextExtractionCapability,
        thresholds: Thresholds | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        timeout_seconds: float | None = None,
        sleep=asyncio.sleep,
    ):
        self.capability = capability
        self.thresholds = thresholds or Thresholds.from_settings()
        self.max_attempts = max_attempts or settings.EXTRACTION_MAX_ATTEMPTS
        self.backoff_seconds = settings.EXTRACTION_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self.timeout_seconds = timeout_seconds or settings.DOCUMENT_TIMEOUT_SECONDS
        self._sleep = sleep

    async def run(self, image_bytes: bytes, ctx: RequestContext, content_type: str = "image/png") -> PipelineOutcome:
        transitions = [DocumentState.UPLOADED]
        timeout = self.timeout_seconds
        remaining = ctx.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)
        try:
            outcome = await asyncio.wait_for(self._run(image_bytes, content_type, ctx, transitions), timeout)
        except asyncio.TimeoutError:
            logger.warning("Document timed out after %.1fs (correlation %s)", timeout, ctx.correlation_id)
            outcome = PipelineOutcome(
                DocumentState.REJECTED, OutcomeReason.TIMEOUT, detail=f"Processing exceeded {timeout:.1f}s"
            )
        outcome.transitions = transitions + [outcome.state]
        logger.info(
            "Pipeline finished state=%s reason=%s confidence=%.2f (correlation %s)",
            outcome.state.value, outcome.reason.value if outcome.reason else "-", outcome.confidence, ctx.correlation_id,
        )
        return outcome

    async def _run(self, image_bytes: bytes, content_type: str, ctx: RequestContext, transitions: list) -> PipelineOutcome:
        try:
            text = await self._call(self.capability.extract_text, ctx, image_bytes, content_type)
        except ExtractionUnavailable as e:
            return PipelineOutcome(DocumentState.REJECTED, OutcomeReason.EXTRACTION_UNAVAILABLE, detail=str(e))
        transitions.append(DocumentState.TEXT_EXTRACTED)

        try:
            payload = await self._call(self.capability.parse_structured, ctx, text)
            extracted = build_extracted(text, payload)
        except ParseFailure as e:
            logger.warning("Parse failure (correlation %s): %s", ctx.correlation_id, e)
            return PipelineOutcome(DocumentState.REJECTED, OutcomeReason.PARSE_FAILURE, detail=str(e))
        except ExtractionUnavailable as e:
            return PipelineOutcome(DocumentState.REJECTED, OutcomeReason.EXTRACTION_UNAVAILABLE, detail=str(e))
        transitions.append(DocumentState.PARSED)

        violations = validate_shipment(extracted, self.thresholds.total_tolerance)
        transitions.append(DocumentState.VALIDATED)

        state, reason = route(extracted, violations, self.thresholds)
        return PipelineOutcome(state, reason, extracted, violations, detail="; ".join(violations))

    async def _call(self, operation, ctx: RequestContext, *args):
        """Run one capability call, retrying transient failures with exponential backoff."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation(*args)
            except TransientExtractionError as e:
                if attempt >= self.max_attempts:
                    logger.error(
                        "Extraction unavailable after %d attempts (correlation %s): %s",
                        attempt, ctx.correlation_id, e,
                    )
                    raise ExtractionUnavailable(f"Gave up after {attempt} attempts: {e}") from e
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Transient extraction error on attempt %d, retrying in %.2fs (correlation %s): %s",
                    attempt, delay, ctx.correlation_id, e,
                )
                await self._sleep(delay)
            except IntakeError:
                raise
            except Exception as e:
                logger.exception("Extraction capability failed unexpectedly (correlation %s)", ctx.correlation_id)
                raise ExtractionUnavailable(f"Extraction capability error: {e}") from e
