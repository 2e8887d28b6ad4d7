"""
Inference call scheduler.

Every call to the reasoning service goes through `InferenceScheduler.schedule`:
calls run one at a time in arrival order, are spaced apart, are
de-duplicated against recent identical payloads, and are bounded by a hard
timeout. Foreground calls additionally hold the system-wide `InferenceLock`
that the heartbeat checks before doing any work.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from reasoning_client import ImageInput, ReasoningService
from runtime_state import _env_float, _env_int, _first_env, _utc_iso_now

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]

DEGRADED_REPLY_TEMPLATE = "[System Error] Neural core timeout or disconnect. (Ref: {ref})"


@dataclass(frozen=True)
class PurposePolicy:
    model_role: str
    temperature: float
    exclusive: bool
    foreground: bool


PURPOSE_POLICIES: Dict[str, PurposePolicy] = {
    "inference": PurposePolicy("chat", 0.7, exclusive=True, foreground=True),
    "vision": PurposePolicy("vision", 0.7, exclusive=True, foreground=True),
    "heartbeat": PurposePolicy("chat", 0.1, exclusive=False, foreground=False),
    "classification": PurposePolicy("sifter", 0.1, exclusive=False, foreground=False),
    "analytical": PurposePolicy("sifter", 0.1, exclusive=False, foreground=False),
}


@dataclass
class SchedulerConfig:
    min_spacing_sec: float = 2.0
    dedup_window_sec: float = 1.5
    dedup_capacity: int = 20
    call_timeout_sec: float = 55.0
    lock_max_hold_sec: float = 60.0
    lock_poll_interval_sec: float = 0.25
    max_output_tokens: int = 2048
    chat_model: str = ""
    sifter_model: str = ""
    vision_model: str = ""

    @classmethod
    def from_env(cls) -> "SchedulerConfig":
        chat_model = _first_env(["LLM_MODEL_NAME"])
        return cls(
            min_spacing_sec=_env_float("SCHEDULER_MIN_SPACING_SEC", 2.0),
            dedup_window_sec=_env_float("SCHEDULER_DEDUP_WINDOW_SEC", 1.5),
            dedup_capacity=_env_int("SCHEDULER_DEDUP_CAPACITY", 20, minimum=1),
            call_timeout_sec=_env_float("SCHEDULER_CALL_TIMEOUT_SEC", 55.0, minimum=1.0),
            lock_max_hold_sec=_env_float("SCHEDULER_LOCK_MAX_HOLD_SEC", 60.0, minimum=1.0),
            max_output_tokens=_env_int("LLM_MAX_OUTPUT_TOKENS", 2048, minimum=1),
            chat_model=chat_model,
            sifter_model=_first_env(["LLM_SIFTER_MODEL"], chat_model),
            vision_model=_first_env(["LLM_VISION_MODEL"], chat_model),
        )

    def model_for(self, role: str) -> str:
        if role == "sifter":
            return self.sifter_model or self.chat_model
        if role == "vision":
            return self.vision_model or self.chat_model
        return self.chat_model


class InferenceLock:
    """
    At most one holder system-wide.

    A waiter that finds the lock held for longer than `max_hold_sec`
    force-clears it and records the event.
    """

    def __init__(
        self,
        *,
        max_hold_sec: float = 60.0,
        poll_interval_sec: float = 0.25,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._max_hold_sec = max_hold_sec
        self._poll_interval_sec = poll_interval_sec
        self._clock = clock
        self._sleep = sleep
        self._holder: Optional[str] = None
        self._acquired_at: Optional[float] = None
        self.forced_releases = 0

    @property
    def held(self) -> bool:
        return self._holder is not None

    @property
    def holder(self) -> Optional[str]:
        return self._holder

    def held_for(self) -> float:
        if self._acquired_at is None:
            return 0.0
        return self._clock() - self._acquired_at

    async def acquire(self, owner: str) -> None:
        while self._holder is not None:
            held_for = self.held_for()
            if held_for >= self._max_hold_sec:
                self.forced_releases += 1
                logger.warning(
                    "Inference lock held by %s for %.1fs; forcing release for %s",
                    self._holder,
                    held_for,
                    owner,
                )
                self._holder = None
                self._acquired_at = None
                break
            await self._sleep(self._poll_interval_sec)
        self._holder = owner
        self._acquired_at = self._clock()

    def release(self, owner: Optional[str] = None) -> None:
        if owner is not None and self._holder != owner:
            # Already force-cleared and possibly re-taken by someone else.
            return
        self._holder = None
        self._acquired_at = None


class InferenceScheduler:
    """Serializes, spaces, de-duplicates and time-boxes reasoning calls."""

    def __init__(
        self,
        service: ReasoningService,
        config: Optional[SchedulerConfig] = None,
        *,
        system_context: Optional[Callable[[], str]] = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._service = service
        self.config = config or SchedulerConfig.from_env()
        self._system_context = system_context or (lambda: "")
        self._clock = clock
        self._sleep = sleep
        self._serial = asyncio.Lock()
        self.lock = InferenceLock(
            max_hold_sec=self.config.lock_max_hold_sec,
            poll_interval_sec=self.config.lock_poll_interval_sec,
            clock=clock,
            sleep=sleep,
        )
        self._recent: "OrderedDict[str, float]" = OrderedDict()
        self._last_call_at: Optional[float] = None
        self._last_call_iso: Optional[str] = None
        self._busy = False

        self._issued_total = 0
        self._deduped_total = 0
        self._degraded_total = 0
        self._throttled_total = 0
        self._last_error: Optional[str] = None

    @staticmethod
    def fingerprint(purpose: str, messages: List[Dict[str, str]]) -> str:
        serialized = json.dumps(messages, ensure_ascii=False, default=str)
        return f"{purpose}:{serialized[-200:]}"

    @staticmethod
    def policy_for(purpose: str) -> PurposePolicy:
        policy = PURPOSE_POLICIES.get((purpose or "").strip().lower())
        if policy is None:
            raise ValueError(f"unknown inference purpose: {purpose!r}")
        return policy

    def _remember(self, fingerprint: str, issued_at: float) -> None:
        self._recent[fingerprint] = issued_at
        self._recent.move_to_end(fingerprint)
        while len(self._recent) > self.config.dedup_capacity:
            self._recent.popitem(last=False)

    def _degrade(self, purpose: str, policy: PurposePolicy, error: str) -> str:
        self._degraded_total += 1
        self._last_error = error
        logger.error("Inference call failed (%s): %s", purpose, error)
        if policy.foreground:
            return DEGRADED_REPLY_TEMPLATE.format(ref=error[:50])
        return ""

    async def schedule(
        self,
        purpose: str,
        messages: List[Dict[str, str]],
        *,
        images: Optional[List[ImageInput]] = None,
    ) -> str:
        """
        Run one reasoning call and return its text.

        Returns "" for suppressed duplicates and for failed background
        calls; failed foreground calls return a readable error line.
        """
        policy = self.policy_for(purpose)
        fingerprint = self.fingerprint(purpose.strip().lower(), messages)

        async with self._serial:
            started_at = self._clock()
            if self._last_call_at is not None:
                wait = self.config.min_spacing_sec - (started_at - self._last_call_at)
                if wait > 0:
                    self._throttled_total += 1
                    logger.info("Throttling %s call for %.2fs", purpose, wait)
                    await self._sleep(wait)

            previous = self._recent.get(fingerprint)
            if previous is not None and (started_at - previous) < self.config.dedup_window_sec:
                self._deduped_total += 1
                logger.warning("Suppressed redundant %s call", purpose)
                return ""

            issued_at = self._clock()
            self._remember(fingerprint, issued_at)
            self._last_call_at = issued_at
            self._last_call_iso = _utc_iso_now()
            self._issued_total += 1

            if policy.exclusive:
                await self.lock.acquire(purpose)
            self._busy = True
            try:
                result = await asyncio.wait_for(
                    self._service.generate(
                        self._system_context(),
                        messages,
                        model=self.config.model_for(policy.model_role),
                        temperature=policy.temperature,
                        max_output_tokens=self.config.max_output_tokens,
                        images=images,
                    ),
                    timeout=self.config.call_timeout_sec,
                )
            except asyncio.TimeoutError:
                return self._degrade(
                    purpose,
                    policy,
                    f"Neural link timed out ({self.config.call_timeout_sec:g}s)",
                )
            except Exception as exc:
                return self._degrade(purpose, policy, str(exc) or type(exc).__name__)
            finally:
                self._busy = False
                if policy.exclusive:
                    self.lock.release(purpose)

        if result.usage:
            logger.info("Token usage %s: %s", purpose, json.dumps(result.usage, default=str))
        return result.text or ""

    def status(self) -> Dict[str, Any]:
        return {
            "busy": self._busy,
            "lock_held": self.lock.held,
            "lock_holder": self.lock.holder,
            "forced_releases": self.lock.forced_releases,
            "last_call_at": self._last_call_iso,
            "dedup_entries": len(self._recent),
            "issued_total": self._issued_total,
            "deduped_total": self._deduped_total,
            "throttled_total": self._throttled_total,
            "degraded_total": self._degraded_total,
            "last_error": self._last_error,
        }
