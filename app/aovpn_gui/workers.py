import traceback
from typing import Any, Callable

from PySide6.QtCore import QObject, QRunnable, Signal

from aovpn.logger import get_logger


class WorkerSignals(QObject):
    finished = Signal(object)
    error = Signal(str)


class Worker(QRunnable):
    """Runs one backend call on the thread pool and reports back through signals."""

    def __init__(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        super().__init__()
        self.fn = fn
        self.args = args
        self.kwargs = kwargs
        self.signals = WorkerSignals()

    def run(self) -> None:
        try:
            result = self.fn(*self.args, **self.kwargs)
        except (RuntimeError, ValueError, OSError) as exc:
            get_logger().warning("%s failed: %s", getattr(self.fn, "__name__", "task"), exc)
            self.signals.error.emit(str(exc))
        except Exception:
            get_logger().error(traceback.format_exc())
            self.signals.error.emit("Unexpected error. See log file for details.")
        else:
            self.signals.finished.emit(result)
