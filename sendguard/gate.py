import asyncio
import logging
import time
import uuid
import weakref
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.orm import sessionmaker

from sendguard.circuit_breaker import CircuitBreaker
from sendguard.clock import Clock, SystemClock
from sendguard.config import Settings, get_settings
from sendguard.duplicates import check_duplicates
from sendguard.logging_utils import decision_id_ctx, log_decision
from sendguard.markers import MarkerStore
from sendguard.metrics import record_decision
from sendguard.recorder import Recorder
from sendguard.rules import MESSAGE_RULES, check_rules
from sendguard.schemas import CheckResult, Decision, GateState, ReasonCode, SafetyStatus
from sendguard.similarity import SimilarityGuard
from sendguard.startup import StartupGate
from sendguard.storage import (
    create_db_engine,
    get_ledger_stats,
    init_db,
    make_session_factory,
    session_scope,
)

logger = logging.getLogger(__name__)

KeyTuple = Tuple[str, str, str]


class SafetyGate:
    """
    Single entry point deciding whether a notification may be sent.

    Fixed check order, first failure wins:
        1. Kill switch
        2. Startup grace period
        3. Business hours
        4. Message-type rules
        5. Duplicate detection (ledger, content hash, side-channel marker,
           rapid fire, consecutive failures)
        6. Circuit breaker
        7. Content similarity

    The gate never persists decisions. Approval does not mean the message
    was sent; the caller delivers and then reports to the Recorder.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        markers: MarkerStore,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.markers = markers
        self.clock = clock or SystemClock()
        self.startup = StartupGate(
            session_factory,
            clock=self.clock,
            grace_period_ms=int(self.settings.GRACE_PERIOD_SECONDS * 1000),
            kill_switch_override=self.settings.KILL_SWITCH,
        )
        self.circuit_breaker = CircuitBreaker(self.settings.HOURLY_LIMIT, self.settings.DAILY_LIMIT)
        self.similarity = SimilarityGuard(self.settings.SIMILARITY_THRESHOLD)
        self._tz = ZoneInfo(self.settings.BUSINESS_TIMEZONE) if self.settings.BUSINESS_TIMEZONE else None
        self._key_locks: "weakref.WeakValueDictionary[KeyTuple, asyncio.Lock]" = weakref.WeakValueDictionary()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> GateState:
        if self.startup.kill_switch_active():
            return GateState.HALTED
        if self.startup.grace_period_active():
            return GateState.STARTUP
        return GateState.ACTIVE

    def business_hours_open(self, now_ms: int) -> bool:
        start = self.settings.BUSINESS_HOURS_START
        end = self.settings.BUSINESS_HOURS_END
        hour = datetime.fromtimestamp(now_ms / 1000, self._tz).hour
        if start == end:
            return True
        if start < end:
            return start <= hour < end
        # Window wraps midnight
        return hour >= start or hour < end

    def status(self) -> SafetyStatus:
        now_ms = self.clock.now_ms()
        with session_scope(self.session_factory) as db:
            ledger = get_ledger_stats(db)
        remaining_ms = self.startup.remaining_grace_ms()
        return SafetyStatus(
            state=self.state,
            started_at_ms=self.startup.started_at_ms,
            grace_period_active=remaining_ms > 0,
            grace_period_remaining_seconds=-(-remaining_ms // 1000),
            business_hours_open=self.business_hours_open(now_ms),
            kill_switch_active=self.startup.kill_switch_active(),
            hourly_limit=self.circuit_breaker.hourly_limit,
            daily_limit=self.circuit_breaker.daily_limit,
            similarity_threshold=self.similarity.threshold,
            message_rule_count=len(MESSAGE_RULES),
            ledger=ledger,
        )

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def key_lock(self, recipient_id: str, order_id: str, message_type: str) -> AsyncIterator[None]:
        """Serialize work on one (recipient, order, type) key within this process."""
        key = (recipient_id, order_id, message_type)
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        async with lock:
            yield

    async def evaluate(
        self,
        recipient_id: str,
        order_id: str,
        message_type: str,
        content: str,
        order_data: Optional[Mapping[str, Any]] = None,
        source_data: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
        serialize: bool = True,
    ) -> Decision:
        """
        Run the full pipeline and return a Decision. Never raises.

        Args:
            timeout: seconds before the whole evaluation fails closed;
                defaults to EVALUATION_TIMEOUT_SECONDS
            serialize: take the per-key lock; pass False when the caller
                already holds key_lock for this key
        """
        if not serialize:
            return await self._evaluate(
                recipient_id, order_id, message_type, content, order_data, source_data, timeout
            )
        async with self.key_lock(recipient_id, order_id, message_type):
            return await self._evaluate(
                recipient_id, order_id, message_type, content, order_data, source_data, timeout
            )

    async def _evaluate(self, recipient_id, order_id, message_type, content, order_data, source_data, timeout) -> Decision:
        decision_id = uuid.uuid4().hex
        token = decision_id_ctx.set(decision_id)
        start_time = time.perf_counter()
        limit = timeout if timeout is not None else self.settings.EVALUATION_TIMEOUT_SECONDS
        now_ms = self.clock.now_ms()
        try:
            try:
                result = await asyncio.wait_for(
                    asyncio.to_thread(
                        self._run_checks,
                        recipient_id,
                        order_id,
                        message_type,
                        content or "",
                        dict(order_data or {}),
                        dict(source_data or {}),
                        now_ms,
                        time.monotonic() + limit,
                    ),
                    timeout=limit,
                )
            except asyncio.TimeoutError:
                result = CheckResult.blocked(
                    ReasonCode.SAFETY_CHECK_ERROR,
                    f"Safety check timed out after {limit}s",
                )
            except Exception as e:
                logger.exception(f"Safety check failed for {recipient_id}/{order_id}/{message_type}")
                result = CheckResult.blocked(
                    ReasonCode.SAFETY_CHECK_ERROR,
                    f"Safety check failed: {e}",
                )

            if result.allowed:
                decision = Decision(
                    allowed=True,
                    reason_code=ReasonCode.APPROVED,
                    human_message="All safety checks passed",
                    decision_id=decision_id,
                    decided_at_ms=now_ms,
                )
            else:
                decision = Decision(
                    allowed=False,
                    reason_code=result.reason_code,
                    human_message=result.message,
                    decision_id=decision_id,
                    decided_at_ms=now_ms,
                )

            latency = time.perf_counter() - start_time
            record_decision(decision.reason_code.value, latency)
            log_decision(logger, decision, recipient_id, order_id, message_type, round(latency * 1000, 2))
            return decision
        finally:
            decision_id_ctx.reset(token)

    def _run_checks(
        self,
        recipient_id: str,
        order_id: str,
        message_type: str,
        content: str,
        order_data: dict,
        source_data: dict,
        now_ms: int,
        deadline: Optional[float] = None,
    ) -> CheckResult:
        """
        Run the pipeline synchronously in a worker thread.

        wait_for cannot stop a running thread, so a timed-out evaluation keeps
        this function running. deadline (a time.monotonic() value) is checked
        before every step; once it has passed the remaining steps are skipped,
        including the grace-period event write.
        """
        def expired(step: str) -> Optional[CheckResult]:
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning(f"Abandoning safety checks for {recipient_id}/{order_id}/{message_type} before {step}")
                return CheckResult.blocked(ReasonCode.SAFETY_CHECK_ERROR, f"Safety check deadline passed before {step}")
            return None

        # 1. Kill switch
        late = expired("kill switch")
        if late:
            return late
        if self.startup.kill_switch_active():
            return CheckResult.blocked(ReasonCode.KILL_SWITCH_ACTIVE, "Emergency kill switch is active")

        # 2. Startup grace period
        late = expired("grace period")
        if late:
            return late
        if self.startup.grace_period_active():
            remaining_s = -(-self.startup.remaining_grace_ms() // 1000)
            return CheckResult.blocked(
                ReasonCode.STARTUP_GRACE_PERIOD,
                f"Startup grace period active ({remaining_s}s remaining)",
            )

        # 3. Business hours
        if not self.business_hours_open(now_ms):
            return CheckResult.blocked(
                ReasonCode.OUTSIDE_BUSINESS_HOURS,
                "Messages not allowed outside business hours "
                f"({self.settings.BUSINESS_HOURS_START:02d}:00-{self.settings.BUSINESS_HOURS_END:02d}:00)",
            )

        with session_scope(self.session_factory) as db:
            # 4. Message-type rules
            late = expired("rules")
            if late:
                return late
            result = check_rules(
                db, recipient_id, order_id, message_type, order_data, source_data, now_ms,
                enforce_windows=self.settings.ENFORCE_RULE_WINDOWS,
            )
            if not result.allowed:
                return result

            # 5. Duplicates
            late = expired("duplicate checks")
            if late:
                return late
            result = check_duplicates(
                db, self.markers, recipient_id, order_id, message_type, content, now_ms, order_data,
                rapid_fire_ms=int(self.settings.RAPID_FIRE_SECONDS * 1000),
                max_consecutive_failures=self.settings.MAX_CONSECUTIVE_FAILURES,
            )
            if not result.allowed:
                return result

            # 6. Circuit breaker
            late = expired("circuit breaker")
            if late:
                return late
            result = self.circuit_breaker.check_limits(db, recipient_id, now_ms)
            if not result.allowed:
                return result

            # 7. Similarity
            late = expired("similarity")
            if late:
                return late
            return self.similarity.check_similarity(db, recipient_id, content, now_ms)


def build_safety_stack(
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
) -> Tuple[SafetyGate, Recorder]:
    """
    Wire the gate and recorder from settings: engine, schema, marker directory.
    Both share one session factory, circuit breaker and clock.
    """
    settings = settings or get_settings()
    clock = clock or SystemClock()
    Path(settings.DATA_DIR).mkdir(parents=True, exist_ok=True)

    engine = create_db_engine(settings.DATABASE_URL)
    init_db(engine)
    session_factory = make_session_factory(engine)
    markers = MarkerStore(Path(settings.DATA_DIR) / "markers")

    gate = SafetyGate(session_factory, markers, settings=settings, clock=clock)
    recorder = Recorder(session_factory, markers, gate.circuit_breaker, clock=clock)
    return gate, recorder
