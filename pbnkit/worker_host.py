"""Off-process pipeline execution with a watchdog-supervised message protocol.

The host and its worker process exchange dict messages over two queues:

    host -> worker:  {'type': 'process', 'request_id': n, 'payload': {...}}
    worker -> host:  {'type': 'progress', 'request_id': n, 'stage': str, 'progress': float}
                     {'type': 'success', 'request_id': n, 'payload': ProcessedResult}
                     {'type': 'error', 'request_id': n, 'error': str}
                     {'type': 'done', 'request_id': n}

A request ends with 'success' then 'done', or with 'error'.
"""
import itertools
import logging
import multiprocessing
import queue
import threading
import time
from typing import Any, Callable, Dict, Optional, Union

from pbnkit.pipeline import process_image
from pbnkit.types import (
    InputError,
    PBNConfig,
    ProcessingTimeoutError,
    ProgressCallback,
    ProtocolError,
    TIMEOUT_GUIDANCE,
    WorkerBusyError,
    WorkerError,
)

logger = logging.getLogger(__name__)

# How often the supervisor wakes to check the worker is still alive
POLL_INTERVAL = 0.25

# Worker exception names re-raised as the same type in the host
REMOTE_ERRORS = {
    'InputError': InputError,
    'ProcessingTimeoutError': ProcessingTimeoutError,
}


def handle_process_request(payload: Dict[str, Any], report: ProgressCallback):
    """Run the pipeline for one 'process' request inside the worker."""
    return process_image(
        payload['image'],
        payload['num_colors'],
        payload['min_region_size'],
        payload['smoothness'],
        on_progress=report,
        merge_tolerance=payload.get('merge_tolerance'),
        min_merge_area=payload.get('min_merge_area'),
        config=payload.get('config')
    )


def worker_main(requests, responses, handler: Callable = handle_process_request) -> None:
    """
    Worker process loop: serve requests until a None sentinel arrives.

    Every request gets either 'success' followed by 'done', or 'error'
    followed by 'done'.
    """
    while True:
        request = requests.get()
        if request is None:
            break

        request_id = request.get('request_id')
        try:
            if request.get('type') != 'process':
                raise ValueError(f"Unknown request type: {request.get('type')!r}")

            def report(stage: str, progress: float) -> None:
                responses.put({
                    'type': 'progress',
                    'request_id': request_id,
                    'stage': stage,
                    'progress': progress,
                })

            result = handler(request.get('payload') or {}, report)
            responses.put({'type': 'success', 'request_id': request_id, 'payload': result})
        except Exception as e:
            responses.put({
                'type': 'error',
                'request_id': request_id,
                'error': str(e) or type(e).__name__,
                'error_type': type(e).__name__,
            })
        responses.put({'type': 'done', 'request_id': request_id})


class ProtocolMonitor:
    """
    Validates the message sequence of one request.

    feed() returns one of 'progress', 'success', 'error', 'done' or
    'ignored', and raises ProtocolError for out-of-order terminal signals.
    """

    def __init__(self, request_id: int):
        self.request_id = request_id
        self.succeeded = False
        self.failed = False
        self.payload: Any = None
        self.error: Optional[str] = None
        self.error_type: Optional[str] = None

    def feed(self, message: Dict[str, Any]) -> str:
        kind = message.get('type')

        if kind == 'progress':
            return 'progress'

        if kind == 'success':
            if self.succeeded or self.failed:
                raise ProtocolError(f"Request {self.request_id}: unexpected second terminal message")
            self.succeeded = True
            self.payload = message.get('payload')
            return 'success'

        if kind == 'error':
            if self.succeeded:
                raise ProtocolError(f"Request {self.request_id}: 'error' after 'success'")
            self.failed = True
            self.error = message.get('error') or 'unknown worker error'
            self.error_type = message.get('error_type')
            return 'error'

        if kind == 'done':
            if not (self.succeeded or self.failed):
                raise ProtocolError(f"Request {self.request_id}: 'done' without 'success'")
            return 'done'

        logger.warning(f"Ignoring unknown worker message type: {kind!r}")
        return 'ignored'


class WorkerHost:
    """
    Runs one pipeline request at a time in a persistent worker process.

    A watchdog fails the call when the worker stays silent for longer than
    timeout seconds; it is reset by every 'progress' and 'success' message.
    The worker is stopped after idle_timeout seconds without requests and
    restarted on demand.
    """

    def __init__(
        self,
        handler: Callable = handle_process_request,
        timeout: float = 35.0,
        idle_timeout: Optional[float] = 60.0,
        target: Callable = worker_main,
        mp_context: Union[str, Any, None] = None
    ):
        """
        Args:
            handler: Module-level function run in the worker for each request
            timeout: Watchdog window in seconds
            idle_timeout: Seconds of inactivity before the worker is stopped
                (None keeps it alive)
            target: Worker process loop
            mp_context: multiprocessing start method name or context
        """
        if isinstance(mp_context, str) or mp_context is None:
            mp_context = multiprocessing.get_context(mp_context)
        self._ctx = mp_context
        self.handler = handler
        self.timeout = timeout
        self.idle_timeout = idle_timeout
        self.target = target

        self._process = None
        self._requests = None
        self._responses = None
        self._busy = threading.Lock()
        # Guards worker start and stop; held only briefly by requests
        self._lifecycle = threading.Lock()
        self._in_flight = False
        self._idle_timer: Optional[threading.Timer] = None
        self._ids = itertools.count(1)

    @classmethod
    def from_config(cls, config: PBNConfig, **kwargs) -> 'WorkerHost':
        return cls(timeout=config.worker_timeout, idle_timeout=config.worker_idle_timeout, **kwargs)

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.is_alive()

    def _start(self) -> None:
        self._requests = self._ctx.Queue()
        self._responses = self._ctx.Queue()
        self._process = self._ctx.Process(
            target=self.target,
            args=(self._requests, self._responses, self.handler),
            daemon=True
        )
        self._process.start()
        logger.info(f"Started worker process {self._process.pid}")

    def _terminate(self) -> None:
        if self._process is None:
            return
        if self._process.is_alive():
            self._process.terminate()
        self._process.join(timeout=5)
        logger.info(f"Terminated worker process {self._process.pid}")
        self._process = None
        self._requests = None
        self._responses = None

    def _cancel_idle_timer(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None

    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        if self.idle_timeout is None or not self.is_running:
            return
        self._idle_timer = threading.Timer(self.idle_timeout, self._on_idle)
        self._idle_timer.daemon = True
        self._idle_timer.start()

    def _on_idle(self) -> None:
        with self._lifecycle:
            if self._in_flight:
                return
            logger.info("Worker idle, shutting down")
            self._stop_worker()

    def _stop_worker(self) -> None:
        if self._process is None:
            return
        if self._process.is_alive():
            self._requests.put(None)
            self._process.join(timeout=5)
        self._terminate()

    def process(
        self,
        payload: Dict[str, Any],
        on_progress: Optional[ProgressCallback] = None
    ) -> Any:
        """
        Send one request to the worker and wait for its result.

        Args:
            payload: Request payload passed to the handler
            on_progress: Called as (stage, percent) for each progress message

        Returns:
            The 'success' payload

        Raises:
            WorkerBusyError: If another call is in flight on this host
            WorkerError: If the worker reports an error or dies
            ProtocolError: If the terminal messages arrive out of order
            ProcessingTimeoutError: If the watchdog window elapses
        """
        if not self._busy.acquire(blocking=False):
            raise WorkerBusyError("A request is already running on this worker host")

        try:
            # Waits out an idle teardown that is already stopping the worker
            with self._lifecycle:
                self._cancel_idle_timer()
                self._in_flight = True
                if not self.is_running:
                    self._start()

            request_id = next(self._ids)
            self._requests.put({'type': 'process', 'request_id': request_id, 'payload': payload})
            return self._supervise(request_id, on_progress)
        finally:
            with self._lifecycle:
                self._in_flight = False
                self._arm_idle_timer()
            self._busy.release()

    def _supervise(self, request_id: int, on_progress: Optional[ProgressCallback]) -> Any:
        monitor = ProtocolMonitor(request_id)
        watchdog = time.monotonic() + self.timeout

        while True:
            remaining = watchdog - time.monotonic()
            if remaining <= 0:
                self._terminate()
                if monitor.succeeded:
                    raise ProtocolError(
                        f"Request {request_id}: 'success' not followed by 'done' "
                        f"within {self.timeout:g}s"
                    )
                raise ProcessingTimeoutError(
                    f"Worker silent for more than {self.timeout:g}s; {TIMEOUT_GUIDANCE}"
                )

            try:
                message = self._responses.get(timeout=min(remaining, POLL_INTERVAL))
            except queue.Empty:
                if not self._process.is_alive():
                    exitcode = self._process.exitcode
                    self._terminate()
                    raise WorkerError(f"Worker process exited unexpectedly (exit code {exitcode})")
                continue

            if not isinstance(message, dict):
                logger.warning(f"Ignoring malformed worker message: {message!r}")
                continue

            if message.get('request_id') != request_id:
                logger.debug(f"Discarding stale message for request {message.get('request_id')}")
                continue

            try:
                event = monitor.feed(message)
            except ProtocolError:
                self._terminate()
                raise

            if event == 'progress':
                watchdog = time.monotonic() + self.timeout
                if on_progress is not None:
                    on_progress(message.get('stage'), message.get('progress'))
            elif event == 'success':
                watchdog = time.monotonic() + self.timeout
            elif event == 'error':
                error_class = REMOTE_ERRORS.get(monitor.error_type, WorkerError)
                raise error_class(monitor.error)
            elif event == 'done':
                return monitor.payload

    def shutdown(self) -> None:
        """Stop the worker and the idle timer."""
        with self._busy, self._lifecycle:
            self._cancel_idle_timer()
            self._stop_worker()

    def __enter__(self) -> 'WorkerHost':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
