import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict

from .config import QuotaLimit


@dataclass
class QuotaUsage:
  request_count: int = 0
  token_count: int = 0
  window_reset_at: float | None = None
  exhausted: bool = False


class QuotaTracker:
  """Per-profile request/token counters with a hard reset timestamp.

  The window is not sliding: counters drop to zero the first time a profile
  is touched after ``window_reset_at`` has passed. State lives in memory only.
  """

  def __init__(self, clock: Callable[[], float] = time.time):
    self._clock = clock
    self._lock = threading.Lock()
    self._usage: Dict[str, QuotaUsage] = {}

  def _entry(self, profile_id: str) -> QuotaUsage:
    usage = self._usage.get(profile_id)
    if usage is None:
      usage = QuotaUsage()
      self._usage[profile_id] = usage
    return usage

  def _roll_window(self, usage: QuotaUsage, now: float, reset_period: float | None) -> None:
    if usage.window_reset_at is not None and now > usage.window_reset_at:
      usage.request_count = 0
      usage.token_count = 0
      usage.exhausted = False
      usage.window_reset_at = None
    if usage.window_reset_at is None and reset_period is not None and reset_period > 0:
      usage.window_reset_at = now + reset_period

  def check_admission(
    self,
    profile_id: str,
    limit: QuotaLimit | None,
    reset_period: float | None = None,
  ) -> bool:
    with self._lock:
      usage = self._entry(profile_id)
      self._roll_window(usage, self._clock(), reset_period)
      if usage.exhausted:
        return False
      if limit is None:
        return True
      if limit.max_requests is not None and usage.request_count >= limit.max_requests:
        return False
      if limit.max_tokens is not None and usage.token_count >= limit.max_tokens:
        return False
      return True

  def record_usage(self, profile_id: str, requests_delta: int = 1, tokens_delta: int = 0) -> QuotaUsage:
    with self._lock:
      usage = self._entry(profile_id)
      self._roll_window(usage, self._clock(), None)
      usage.request_count += max(0, int(requests_delta))
      usage.token_count += max(0, int(tokens_delta))
      return replace(usage)

  def mark_exhausted(self, profile_id: str, reset_period: float) -> QuotaUsage:
    with self._lock:
      usage = self._entry(profile_id)
      usage.window_reset_at = self._clock() + max(float(reset_period), 0.0)
      usage.exhausted = True
      return replace(usage)

  def usage(self, profile_id: str) -> QuotaUsage:
    with self._lock:
      usage = self._usage.get(profile_id)
      return replace(usage) if usage is not None else QuotaUsage()

  def snapshot(self) -> Dict[str, QuotaUsage]:
    with self._lock:
      return {profile_id: replace(usage) for profile_id, usage in self._usage.items()}

  def reset(self, profile_id: str | None = None) -> None:
    with self._lock:
      if profile_id is None:
        self._usage.clear()
      else:
        self._usage.pop(profile_id, None)
