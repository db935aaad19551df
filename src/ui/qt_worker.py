import logging

from PySide6.QtCore import QObject, QRunnable, Signal, Slot

logger = logging.getLogger(__name__)


class WorkerSignals(QObject):
    """
    Signals a Worker reports back through. ``result`` carries the return
    value, ``error`` the exception message, ``finished`` always fires last.
    """
    result = Signal(object)
    error = Signal(str)
    finished = Signal()


class Worker(QRunnable):
    """
    Worker thread for running a blocking chat call in the background.

    The chat manager blocks until a reply is complete, so sends and
    regenerations are handed to a QThreadPool through this runnable.
    """
    def __init__(self, fn, *args, **kwargs):
        super(Worker, self).__init__()
        self.fn = fn
        self.args = args
        self.kwargs = kwargs
        self.signals = WorkerSignals()

    @Slot()
    def run(self):
        try:
            result = self.fn(*self.args, **self.kwargs)
        except Exception as e:
            logger.error(f"Error in worker thread: {e}", exc_info=True)
            self.signals.error.emit(str(e))
        else:
            self.signals.result.emit(result)
        finally:
            self.signals.finished.emit()
