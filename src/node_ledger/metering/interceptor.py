"""
Metering Interceptor

Turns one meterable inference call into exactly one local Task and at
most one Earning:

    begin()    -> Task created in "running" before the handler runs
    complete() -> Task "completed" with usage, Earning written
    fail()     -> Task "failed" with an error description, no Earning

Bookkeeping failures are logged here and never propagate; the caller of
the inference route always gets the backend's response.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import structlog

from ..billing.calculator import EarningsCalculator, EarningsResult
from ..billing.classifier import Classification, RequestClassifier
from ..billing.rates import RateCatalog
from ..config import DeviceIdentity
from ..ledger.earnings import EarningsLedger
from ..ledger.tasks import TaskLedger
from .tokens import estimate_input_tokens, extract_usage, parse_response_body

logger = structlog.get_logger()


@dataclass
class MeteredCall:
    """Bookkeeping state carried from begin() to complete()/fail()."""
    task_id: str
    classification: Classification
    model: str
    input_tokens: int
    started_at: float = field(default_factory=time.monotonic)

    @property
    def duration_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000


@dataclass
class MeteringOutcome:
    """What complete() recorded, for callers and tests."""
    task_id: str
    output_tokens: int
    result: Optional[EarningsResult] = None
    earning_id: Optional[str] = None


class MeteringInterceptor:
    """Drives the task and earnings ledgers from live inference traffic."""

    def __init__(
        self,
        classifier: RequestClassifier,
        catalog: RateCatalog,
        calculator: EarningsCalculator,
        tasks: TaskLedger,
        earnings: EarningsLedger,
        device: DeviceIdentity,
    ):
        self.classifier = classifier
        self.catalog = catalog
        self.calculator = calculator
        self.tasks = tasks
        self.earnings = earnings
        self.device = device

    def classify(self, path: str) -> Optional[Classification]:
        return self.classifier.classify(path)

    def begin(self, classification: Classification, payload: Optional[Dict[str, Any]]) -> Optional[MeteredCall]:
        """Open a running task for a classified call. Returns None if it could not be recorded."""
        payload = payload or {}
        model = payload.get("model") if isinstance(payload.get("model"), str) else "unknown"

        try:
            input_tokens = estimate_input_tokens(payload)
            task = self.tasks.create(model=model, device_id=self.device.device_id)
        except Exception as e:
            logger.error(
                "metering_begin_failed",
                route=classification.route,
                model=model,
                error=str(e),
            )
            return None

        logger.info(
            "metered_call_started",
            task_id=task.id,
            route=classification.route,
            family=classification.family,
            kind=classification.kind,
            model=model,
            input_tokens=input_tokens,
        )
        return MeteredCall(
            task_id=task.id,
            classification=classification,
            model=model,
            input_tokens=input_tokens,
        )

    def complete(self, call: MeteredCall, chunks: List[Dict[str, Any]]) -> Optional[MeteringOutcome]:
        """Close a call whose backend answered successfully."""
        duration_ms = call.duration_ms
        try:
            usage = extract_usage(chunks)
            task_usage = usage.task_usage(call.input_tokens)
            if not task_usage["total_duration"]:
                # Nanoseconds, matching Ollama's own duration fields
                task_usage["total_duration"] = int(duration_ms * 1_000_000)
            self.tasks.complete(call.task_id, task_usage)

            outcome = MeteringOutcome(task_id=call.task_id, output_tokens=usage.output_tokens)

            rate = self.catalog.lookup(call.classification.family, call.classification.kind)
            result = self.calculator.calculate(rate, call.input_tokens, usage.output_tokens, duration_ms)
            if not self.calculator.validate(result):
                logger.error("earning_rejected", task_id=call.task_id, reason="invalid_breakdown")
                return outcome

            earning = self.earnings.create(
                block_rewards=result.block_rewards,
                job_rewards=result.job_rewards,
                task_id=call.task_id,
                device_id=self.device.device_id,
            )
            outcome.result = result
            outcome.earning_id = earning.id

            logger.info(
                "metered_call_completed",
                task_id=call.task_id,
                earning_id=earning.id,
                input_tokens=call.input_tokens,
                output_tokens=usage.output_tokens,
                duration_ms=round(duration_ms, 1),
                earnings=self.calculator.format(result),
            )
            return outcome
        except Exception as e:
            logger.error("metering_complete_failed", task_id=call.task_id, error=str(e))
            return None

    def complete_response(self, call: MeteredCall, body: bytes, content_type: str = "") -> Optional[MeteringOutcome]:
        return self.complete(call, parse_response_body(body, content_type))

    def fail(self, call: MeteredCall, error: str) -> None:
        """Close a call whose handler raised or whose backend returned an error status."""
        try:
            self.tasks.fail(call.task_id, error)
            logger.warning(
                "metered_call_failed",
                task_id=call.task_id,
                route=call.classification.route,
                error=error,
            )
        except Exception as e:
            logger.error("metering_fail_failed", task_id=call.task_id, error=str(e))
