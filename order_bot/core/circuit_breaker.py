"""
Circuit breaker for outbound WhatsApp traffic.

Conversation replies and order notifications go through separate breakers, so
a burst of failed notification sends never blocks replies to customers who
are chatting right now. Thresholds come from settings.
"""
import asyncio
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, ParamSpec, TypeVar

from order_bot.core.config import settings
from order_bot.core.exceptions import CircuitBreakerOpenError
from order_bot.core.logging import get_logger

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

CONVERSATION_BREAKER = "whatsapp"
NOTIFICATIONS_BREAKER = "whatsapp_notifications"


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5      # כשלונות רצופים עד פתיחה
    success_threshold: int = 2      # הצלחות ב-half-open עד סגירה
    timeout_seconds: float = 30.0   # זמן המתנה לפני ניסיון חוזר
    half_open_max_calls: int = 3


class CircuitBreaker:
    """
    Counts consecutive send failures for one WhatsApp channel.

    CLOSED lets everything through. After ``failure_threshold`` failures in a
    row the breaker opens and rejects sends with CircuitBreakerOpenError until
    ``timeout_seconds`` pass. It then lets a few trial sends through
    (HALF_OPEN): enough successes close it again, any failure reopens it.
    """

    _registry: dict[str, "CircuitBreaker"] = {}
    _registry_lock = threading.Lock()

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._trial_successes = 0
        self._trial_calls = 0
        self._trial_round = 0
        self._opened_at = 0.0
        # threading.Lock - כל task של Celery רץ ב-event loop משלו
        self._lock = threading.Lock()

    @classmethod
    def get_instance(cls, service_name: str, config: CircuitBreakerConfig | None = None) -> "CircuitBreaker":
        """Process-wide breaker per channel name; ``config`` applies on first use only."""
        with cls._registry_lock:
            breaker = cls._registry.get(service_name)
            if breaker is None:
                breaker = cls._registry[service_name] = cls(service_name, config)
            return breaker

    @classmethod
    def reset_all(cls) -> None:
        with cls._registry_lock:
            cls._registry.clear()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state is CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    def _move_to(self, new_state: CircuitState) -> None:
        # נקרא רק כשה-lock תפוס
        old_state, self._state = self._state, new_state
        if new_state is CircuitState.OPEN:
            self._opened_at = time.monotonic()
        elif new_state is CircuitState.HALF_OPEN:
            self._trial_calls = 0
            self._trial_successes = 0
            self._trial_round += 1
        else:
            self._failures = 0
        logger.info(
            f"WhatsApp circuit '{self.service_name}' is now {new_state.value}",
            extra_data={"service": self.service_name, "from": old_state.value, "to": new_state.value},
        )

    def get_retry_after(self) -> float:
        """Seconds until the open breaker lets a trial send through (0 when not open)."""
        if self._state is not CircuitState.OPEN:
            return 0.0
        return max(0.0, self.config.timeout_seconds - (time.monotonic() - self._opened_at))

    def _acquire(self) -> tuple[bool, int | None]:
        """(allowed, trial round of the slot taken or None)"""
        with self._lock:
            if self._state is CircuitState.CLOSED:
                return True, None

            if self._state is CircuitState.OPEN:
                if self.get_retry_after() > 0:
                    return False, None
                # הקריאה שעוברת ל-half-open היא ניסיון חינם
                self._move_to(CircuitState.HALF_OPEN)
                return True, None

            if self._trial_calls >= self.config.half_open_max_calls:
                return False, None
            self._trial_calls += 1
            return True, self._trial_round

    def _give_back_trial(self, trial_round: int) -> None:
        """Free a slot whose send ended without a recorded outcome"""
        with self._lock:
            if self._state is CircuitState.HALF_OPEN and self._trial_round == trial_round and self._trial_calls > 0:
                self._trial_calls -= 1

    async def can_execute(self) -> bool:
        allowed, _ = self._acquire()
        return allowed

    async def record_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._trial_successes += 1
                if self._trial_successes >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED)
            else:
                self._failures = 0

    async def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            self._failures += 1
            logger.warning(
                f"WhatsApp send failed on circuit '{self.service_name}'",
                extra_data={
                    "service": self.service_name,
                    "consecutive_failures": self._failures,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None,
                },
            )
            if self._state is CircuitState.HALF_OPEN or self._failures >= self.config.failure_threshold:
                self._move_to(CircuitState.OPEN)

    async def execute(self, func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
        """
        Run one send through the breaker.

        Raises:
            CircuitBreakerOpenError: the channel is open and the send was not attempted
        """
        allowed, trial_round = self._acquire()
        if not allowed:
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            result = func(*args, **kwargs)
            if asyncio.iscoroutine(result):
                result = await result
        except Exception as e:
            await self.record_failure(e)
            raise
        except BaseException:
            # ביטול (CancelledError) אינו הצלחה ואינו כשלון - הסלוט חוזר
            if trial_round is not None:
                self._give_back_trial(trial_round)
            raise

        await self.record_success()
        return result


def get_whatsapp_circuit_breaker() -> CircuitBreaker:
    """Breaker for replies inside a live conversation"""
    return CircuitBreaker.get_instance(
        CONVERSATION_BREAKER,
        CircuitBreakerConfig(
            failure_threshold=settings.WHATSAPP_CIRCUIT_FAILURE_THRESHOLD,
            timeout_seconds=settings.WHATSAPP_CIRCUIT_TIMEOUT_SECONDS,
        ),
    )


def get_whatsapp_notifications_circuit_breaker() -> CircuitBreaker:
    """Breaker for order status notifications and abandoned cart reminders"""
    return CircuitBreaker.get_instance(
        NOTIFICATIONS_BREAKER,
        CircuitBreakerConfig(
            failure_threshold=settings.WHATSAPP_NOTIFICATIONS_CIRCUIT_FAILURE_THRESHOLD,
            timeout_seconds=settings.WHATSAPP_NOTIFICATIONS_CIRCUIT_TIMEOUT_SECONDS,
        ),
    )
