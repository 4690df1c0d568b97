from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Iterable, Optional

from .config import normalize_tone
from .state import AutomationState, empty_stats
from .storage import Storage
from .workflow import CommentWorkflow


TimerFactory = Callable[..., Any]


class PollScheduler:
    """Runs ``CommentWorkflow`` cycles on a timer, one cycle at a time.

    The timer is one-shot and re-armed after each tick while the automation is
    running. ``stop()`` only flips the running flag and cancels the timer; an
    in-flight cycle ends at its next stage boundary.
    """

    def __init__(
        self,
        workflow: CommentWorkflow,
        storage: Storage,
        *,
        poll_seconds: float = 30,
        timer_factory: TimerFactory = threading.Timer,
        logger: Optional[logging.Logger] = None,
    ):
        if poll_seconds <= 0:
            raise ValueError("poll_seconds must be positive")
        self.workflow = workflow
        self.storage = storage
        self.poll_seconds = poll_seconds
        self.state = AutomationState()
        self.logger = logger or logging.getLogger("replybot.automation")
        self._timer_factory = timer_factory
        self._timer: Optional[Any] = None
        self._generation = 0
        self._closed = False
        self._cycle_lock = threading.Lock()
        self._control_lock = threading.RLock()
        self._stopped = threading.Event()
        self._stopped.set()
        if workflow.on_fatal is None:
            workflow.on_fatal = self._on_fatal

    # Operator entry points

    def start(self) -> bool:
        with self._control_lock:
            if self.state.running:
                return False
            self.state.running = True
            self._closed = False
            self._stopped.clear()
            self.persist()
            self.logger.info(
                "Automation started poll_seconds=%s tone=%s selected_posts=%s monitor_all=%s",
                self.poll_seconds,
                self.workflow.tone,
                len(self.workflow.selected_post_ids),
                self.workflow.monitor_all,
            )
            self._activity("info", "Automation started", {"poll_seconds": self.poll_seconds})

        self.tick()

        with self._control_lock:
            if self.state.running and not self._closed:
                self._arm_timer()
        return True

    def stop(self, reason: Optional[str] = None) -> bool:
        with self._control_lock:
            if not self.state.running:
                return False
            self.state.running = False
            self._cancel_timer()
            self.persist()
            self.logger.info("Automation stopped reason=%s", reason or "operator")
            message = f"Automation stopped: {reason}" if reason else "Automation stopped"
            self._activity("info", message, {"reason": reason})
            self._stopped.set()
        return True

    def shutdown(self) -> None:
        """Cancel the timer for process exit, keeping the durable running flag."""
        with self._control_lock:
            self._closed = True
            self._cancel_timer()
            self.persist()
            self._stopped.set()
        self.logger.info("Scheduler shut down running=%s", self.state.running)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._stopped.wait(timeout)

    def update_config(
        self,
        *,
        tone: Optional[str] = None,
        poll_interval_seconds: Optional[float] = None,
        selected_post_ids: Optional[Iterable[str]] = None,
        monitor_all: Optional[bool] = None,
    ) -> Dict[str, Any]:
        changes: Dict[str, Any] = {}
        with self._control_lock:
            if tone is not None:
                self.workflow.tone = normalize_tone(tone)
                changes["tone"] = self.workflow.tone
            if selected_post_ids is not None:
                self.workflow.selected_post_ids = [str(p).strip() for p in selected_post_ids if str(p).strip()]
                changes["selected_post_ids"] = list(self.workflow.selected_post_ids)
            if monitor_all is not None:
                self.workflow.monitor_all = bool(monitor_all)
                changes["monitor_all"] = self.workflow.monitor_all
            if poll_interval_seconds is not None:
                seconds = float(poll_interval_seconds)
                if seconds <= 0:
                    raise ValueError("poll_interval_seconds must be positive")
                if seconds != self.poll_seconds:
                    self.poll_seconds = seconds
                    changes["poll_seconds"] = seconds
                    if self.state.running and not self._closed:
                        self._arm_timer()
            if changes:
                self.logger.info("Config updated %s", " ".join(f"{k}={v}" for k, v in changes.items()))
                self._activity("info", "Automation settings updated", changes)
        return changes

    def reset_stats(self) -> None:
        with self._control_lock:
            self.state.stats = empty_stats()
            self.persist()
            self.logger.info("Stats reset")
            self._activity("info", "Statistics reset", None)

    def restore_state(self, resume: bool = True) -> bool:
        """Load durable state. Returns True when polling was resumed."""
        try:
            saved = self.storage.load_automation_state()
        except (OSError, ValueError) as e:
            self.logger.warning("Could not load automation state path=%s error=%s", self.storage.state_path, e)
            return False
        if not saved:
            return False
        with self._control_lock:
            self.state.restore(saved)
        self.logger.info(
            "State restored running=%s last_check_time=%s stats=%s",
            bool(saved.get("running")),
            saved.get("last_check_time"),
            self.state.stats,
        )
        if resume and saved.get("running"):
            self.logger.info("Resuming automation from saved state")
            return self.start()
        return False

    def get_state(self) -> Dict[str, Any]:
        state = self.state
        return {
            "running": state.running,
            "last_check_time": state.last_check_time.isoformat() if state.last_check_time else None,
            "stats": dict(state.stats),
            "pending_count": len(state.pending_comments),
            "processed_count": self.storage.processed_count(),
            "error_count": int(state.stats.get("error_count", 0)),
            "is_processing": self._cycle_lock.locked(),
            "poll_seconds": self.poll_seconds,
            "tone": self.workflow.tone,
        }

    # Cycle driving

    def tick(self) -> bool:
        """Run one cycle unless stopped or a cycle is already in flight."""
        if not self.state.running:
            self.logger.debug("Cycle skipped reason=stopped")
            return False
        if not self._cycle_lock.acquire(blocking=False):
            self.logger.debug("Cycle skipped reason=in_flight")
            return False
        try:
            self.workflow.run_cycle(self.state)
        except Exception as e:
            self.logger.exception("Cycle failed error=%s", e)
            self.state.bump("error_count")
            self._activity("error", f"Automation cycle failed: {e}", {"stage": "cycle"})
        finally:
            self.persist()
            self._cycle_lock.release()
        return True

    def persist(self) -> None:
        try:
            self.storage.save_automation_state(self.state.to_persisted())
        except (OSError, TypeError, ValueError) as e:
            self.logger.error("Failed to persist automation state path=%s error=%s", self.storage.state_path, e)

    def _on_timer(self, generation: int) -> None:
        if generation != self._generation:
            return
        self.tick()
        with self._control_lock:
            if self.state.running and not self._closed and generation == self._generation:
                self._arm_timer()

    def _arm_timer(self) -> None:
        self._cancel_timer()
        self._generation += 1
        timer = self._timer_factory(self.poll_seconds, self._on_timer, args=(self._generation,))
        timer.daemon = True
        self._timer = timer
        timer.start()
        self.logger.debug("Next poll in %ss", self.poll_seconds)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_fatal(self, reason: str) -> None:
        self.stop(reason=f"fatal error: {reason}")

    def _activity(self, entry_type: str, message: str, details: Optional[Dict[str, Any]]) -> None:
        try:
            self.storage.append_log({"type": entry_type, "message": message, "details": details})
        except OSError as e:
            self.logger.warning("Could not write activity log error=%s", e)
