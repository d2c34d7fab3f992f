"""
Crisis Trainer
Fire-and-forget task runner.

Background work (secondary session analysis) runs in daemon threads inside
its own app context.  Failures are logged and never reach the request that
spawned the task.  With RUN_BACKGROUND_TASKS_INLINE set (testing) the task
runs synchronously in the caller's context, still behind the same error
sink.
"""

import logging
import threading

from flask import current_app

from crisis_trainer.models import db

logger = logging.getLogger(__name__)

# In-memory registry of running jobs (task name → Thread)
_running_tasks: dict[str, threading.Thread] = {}


class TaskRunner:
    """Runs detached units of work and logs their failures."""

    def submit(self, name: str, execute_fn, *args, **kwargs) -> None:
        """
        Start ``execute_fn(*args, **kwargs)`` without waiting for it.

        Args:
            name: Label used in logs and the running-task registry.
            execute_fn: Callable doing the work; it must load its own rows.
        """
        app = current_app._get_current_object()

        if app.config.get("RUN_BACKGROUND_TASKS_INLINE"):
            self._run_logged(name, execute_fn, args, kwargs)
            return

        t = threading.Thread(
            target=self._execute_in_background,
            args=(app, name, execute_fn, args, kwargs),
            daemon=True,
            name=f"task-{name}",
        )
        _running_tasks[name] = t
        t.start()

    def _execute_in_background(self, app, name, execute_fn, args, kwargs):
        with app.app_context():
            try:
                self._run_logged(name, execute_fn, args, kwargs)
            finally:
                db.session.remove()
                _running_tasks.pop(name, None)

    @staticmethod
    def _run_logged(name, execute_fn, args, kwargs):
        try:
            execute_fn(*args, **kwargs)
            logger.info("Background task %s finished", name, extra={"task": name})
        except Exception:
            logger.exception("Background task %s failed", name, extra={"task": name})
            db.session.rollback()


task_runner = TaskRunner()
