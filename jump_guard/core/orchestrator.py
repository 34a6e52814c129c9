"""
Credit-gated plan generation.

Lifecycle:
IDLE -> CREDIT_RESERVED -> MODEL_INVOKED -> PARSED -> COMMITTED

Any failure after the debit ends in REFUNDED: the debit is compensated
under a reference derived from the idempotency key, or, when the ledger
cannot take the refund, the obligation is queued for reconciliation.
A call that replays an earlier debit never refunds it.
"""

import logging
import sqlite3
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import (
    FailureKind,
    GenerationCancelled,
    LedgerError,
    UpstreamClientError,
    UpstreamExhausted,
)
from .parser import ResponseParser
from .prompts import StudioForm, build_jump_prompt
from ..storage.models import DebitStatus

logger = logging.getLogger(__name__)

DEFAULT_COST = 1
DEFAULT_DESCRIPTION = "JumpinAI Studio generation"


class GenerationState(Enum):
    IDLE = "idle"
    CREDIT_RESERVED = "credit_reserved"
    MODEL_INVOKED = "model_invoked"
    PARSED = "parsed"
    COMMITTED = "committed"
    REFUNDED = "refunded"


class RefundStatus(Enum):
    """What happened to the debit of a failed generation."""
    NOT_NEEDED = "not_needed"
    REFUNDED = "refunded"
    PENDING = "pending"
    QUEUED = "queued"
    FAILED = "failed"


@dataclass(frozen=True)
class JumpPlan:
    """Structured plan recovered from the model reply."""
    jump_id: str
    data: Dict[str, Any]
    raw_text: str

    @property
    def name(self) -> Optional[str]:
        return self.data.get("jumpName") or self.data.get("title")

    def _list(self, key: str) -> List[Any]:
        value = self.data.get(key)
        return value if isinstance(value, list) else []

    @property
    def phases(self) -> List[Any]:
        return self._list("phases")

    @property
    def tools(self) -> List[Any]:
        return self._list("tools")

    @property
    def prompts(self) -> List[Any]:
        return self._list("prompts")


@dataclass(frozen=True)
class GenerationResult:
    """Outcome of one generation; failures are values, not exceptions."""
    state: GenerationState
    plan: Optional[JumpPlan] = None
    error: Optional[FailureKind] = None
    detail: Optional[str] = None
    raw_text: Optional[str] = None
    status_code: Optional[int] = None
    refund: RefundStatus = RefundStatus.NOT_NEEDED
    balance: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class GenerationOrchestrator:
    """Reserve a credit, call the model, parse, then commit or compensate.

    Collaborators are injected so tests can substitute fakes:
    ``ledger`` (CreditLedger), ``model_client`` (ResilientModelClient),
    ``parser`` (ResponseParser), optional ``counters`` (UsageCounterStore)
    and ``refund_queue`` (RefundQueue).
    """

    def __init__(
        self,
        ledger,
        model_client,
        parser: Optional[ResponseParser] = None,
        counters=None,
        refund_queue=None,
        cost: int = DEFAULT_COST,
        description: str = DEFAULT_DESCRIPTION,
        executor: Optional[ThreadPoolExecutor] = None
    ):
        if cost <= 0:
            raise ValueError("cost must be > 0")
        self.ledger = ledger
        self.model_client = model_client
        self.parser = parser or ResponseParser()
        self.counters = counters
        self.refund_queue = refund_queue
        self.cost = cost
        self.description = description
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="refund")
        self._pending: List[Future] = []
        self._pending_lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.shutdown(wait=True)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the background refund worker, finishing queued refunds when ``wait``."""
        self._executor.shutdown(wait=wait)

    def wait_for_refunds(self, timeout: Optional[float] = None) -> None:
        """Block until refunds scheduled by cancelled generations have finished."""
        with self._pending_lock:
            pending, self._pending = self._pending, []
        for future in pending:
            future.result(timeout=timeout)

    def compensate(self, user_id: str, idempotency_key: str, reason: str) -> RefundStatus:
        """Refund the debit of a failed generation, or queue the obligation.

        Returns:
            REFUNDED, QUEUED, or FAILED when neither the ledger nor the
            queue could record it
        """
        try:
            self.ledger.refund(
                user_id,
                self.cost,
                idempotency_key,
                description=f"Refund: {reason}"
            )
            return RefundStatus.REFUNDED
        except (LedgerError, sqlite3.Error) as e:
            logger.error(f"Refund for {idempotency_key} failed: {e}")
            if self.refund_queue is None:
                logger.critical(f"Credit lost for user {user_id} ({idempotency_key}): no refund queue")
                return RefundStatus.FAILED
            try:
                self.refund_queue.enqueue(user_id, self.cost, idempotency_key, error=str(e))
            except sqlite3.Error as queue_error:
                logger.critical(
                    f"Credit lost for user {user_id} ({idempotency_key}): "
                    f"refund failed ({e}) and could not be queued ({queue_error})"
                )
                return RefundStatus.FAILED
            return RefundStatus.QUEUED

    def _fail(
        self,
        user_id: str,
        idempotency_key: str,
        owns_debit: bool,
        error: FailureKind,
        detail: str,
        raw_text: Optional[str] = None,
        status_code: Optional[int] = None
    ) -> GenerationResult:
        if not owns_debit:
            # The debit belongs to an earlier call with this key
            logger.warning(f"Replayed generation {idempotency_key} failed ({error.value}), debit kept")
            return GenerationResult(
                state=GenerationState.CREDIT_RESERVED,
                error=error,
                detail=detail,
                raw_text=raw_text,
                status_code=status_code
            )
        refund = self.compensate(user_id, idempotency_key, error.value)
        return GenerationResult(
            state=GenerationState.REFUNDED,
            error=error,
            detail=detail,
            raw_text=raw_text,
            status_code=status_code,
            refund=refund
        )

    def _schedule_refund(self, user_id: str, idempotency_key: str, reason: str) -> None:
        future = self._executor.submit(self.compensate, user_id, idempotency_key, reason)
        with self._pending_lock:
            self._pending.append(future)

    def _cancel(self, user_id: str, idempotency_key: str, owns_debit: bool) -> GenerationResult:
        detail = "Request cancelled before the plan was generated"
        if not owns_debit:
            return GenerationResult(
                state=GenerationState.CREDIT_RESERVED,
                error=FailureKind.CANCELLED,
                detail=detail
            )
        logger.warning(f"Generation {idempotency_key} cancelled after debit, refunding in background")
        self._schedule_refund(user_id, idempotency_key, "cancelled")
        return GenerationResult(
            state=GenerationState.REFUNDED,
            error=FailureKind.CANCELLED,
            detail=detail,
            refund=RefundStatus.PENDING
        )

    def generate(
        self,
        user_id: str,
        prompt: str,
        idempotency_key: str,
        cancel_event: Optional[threading.Event] = None
    ) -> GenerationResult:
        """Run one paid generation.

        Args:
            user_id: Paying user
            prompt: Prompt sent to the model
            idempotency_key: Caller token; the debit is applied at most once
                per key and also becomes the jump id
            cancel_event: Set by the caller to abandon the request

        Returns:
            GenerationResult; ``ok`` is True with ``plan`` set on success
        """
        if not user_id or not prompt or not prompt.strip() or not idempotency_key:
            return GenerationResult(
                state=GenerationState.IDLE,
                error=FailureKind.INVALID_REQUEST,
                detail="user_id, prompt and idempotency_key are required"
            )

        started = time.monotonic()
        try:
            self.ledger.initialize(user_id)
            debit = self.ledger.try_debit(
                user_id,
                amount=self.cost,
                description=self.description,
                reference_id=idempotency_key
            )
        except LedgerError as e:
            logger.error(f"Ledger unavailable for {idempotency_key}: {e}")
            return GenerationResult(
                state=GenerationState.IDLE,
                error=FailureKind.LEDGER_UNAVAILABLE,
                detail=str(e)
            )

        if not debit.granted:
            if debit.status == DebitStatus.COMPENSATED:
                error = FailureKind.REFERENCE_SPENT
                detail = "This request was already refunded; retry with a new idempotency key"
            else:
                error = FailureKind.INSUFFICIENT_CREDITS
                detail = f"Insufficient credits. Required: {self.cost}, available: {debit.balance}"
            logger.info(f"Generation {idempotency_key} denied for user {user_id}: {error.value}")
            return GenerationResult(
                state=GenerationState.IDLE,
                error=error,
                detail=detail,
                balance=debit.balance
            )

        # CREDIT_RESERVED: no lock is held from here on. Only the call that
        # made the debit may refund it.
        owns_debit = debit.status == DebitStatus.GRANTED
        try:
            raw_text = self.model_client.invoke(prompt, cancel_event=cancel_event)
        except GenerationCancelled:
            return self._cancel(user_id, idempotency_key, owns_debit)
        except UpstreamExhausted as e:
            return self._fail(
                user_id, idempotency_key, owns_debit, FailureKind.UPSTREAM_EXHAUSTED,
                f"{e} (last status {e.status_code}): {e.body}",
                status_code=e.status_code
            )
        except UpstreamClientError as e:
            return self._fail(
                user_id, idempotency_key, owns_debit, FailureKind.UPSTREAM_CLIENT_ERROR,
                f"{e}: {e.body}",
                status_code=e.status_code
            )
        except Exception as e:
            logger.exception(f"Unexpected error calling the model for {idempotency_key}")
            return self._fail(
                user_id, idempotency_key, owns_debit, FailureKind.INTERNAL_ERROR,
                f"{type(e).__name__}: {e}"
            )
        except BaseException:
            if owns_debit:
                self._schedule_refund(user_id, idempotency_key, "interrupted")
            raise

        # MODEL_INVOKED
        try:
            data = self.parser.extract_object(raw_text)
        except Exception:
            logger.exception(f"Parser error for {idempotency_key}")
            data = None
        if data is None:
            logger.error(f"Could not parse plan for {idempotency_key}: {str(raw_text)[:500]!r}")
            return self._fail(
                user_id, idempotency_key, owns_debit, FailureKind.PARSE_FAILURE,
                "Model reply did not contain a JSON object",
                raw_text=raw_text
            )

        # PARSED
        plan = JumpPlan(jump_id=idempotency_key, data=data, raw_text=raw_text)
        if self.counters is not None:
            try:
                self.counters.create(idempotency_key)
            except sqlite3.Error as e:
                logger.warning(f"Could not create counters for jump {idempotency_key}: {e}")

        logger.info(
            f"Generated jump {idempotency_key} for user {user_id} "
            f"in {time.monotonic() - started:.1f}s"
        )
        return GenerationResult(state=GenerationState.COMMITTED, plan=plan, balance=debit.balance)

    def generate_from_form(
        self,
        user_id: str,
        form: Union[StudioForm, Mapping[str, str]],
        idempotency_key: str,
        cancel_event: Optional[threading.Event] = None
    ) -> GenerationResult:
        """Validate a studio form, build the jump prompt and generate."""
        try:
            if not isinstance(form, StudioForm):
                form = StudioForm(**form)
        except (TypeError, ValueError) as e:
            return GenerationResult(
                state=GenerationState.IDLE,
                error=FailureKind.INVALID_REQUEST,
                detail=str(e)
            )
        return self.generate(user_id, build_jump_prompt(form), idempotency_key, cancel_event=cancel_event)
