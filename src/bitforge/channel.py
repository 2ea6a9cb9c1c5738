"""Execution channel: runs builds in an isolated background worker.

A :class:`BuildChannel` is an explicit handle owned by the caller. Its
lifecycle is ``open -> run (once or many, one at a time) -> close``::

    with BuildChannel(toolchain) as channel:
        run = channel.run(BuildRequest(files, params), on_message=show)
        ...  # the caller keeps doing interactive work
        terminal = run.wait()

The worker is a separate process by default, so a run's secondary packing
environment and working files never bleed into the host or into another
channel. A thread worker is available for embedding and tests.

Messages arrive in FIFO order: the progress messages of a run, then exactly
one terminal message. If the worker dies mid-run the run still receives a
terminal :class:`~bitforge.messages.ErrorMessage` (with ``stage=None``) and
the channel is dead: construct a new channel for further builds.
"""

from __future__ import annotations

import functools
import logging
import multiprocessing
import queue
import shutil
import tempfile
import threading
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any, Literal

from bitforge.config import ToolchainConfig
from bitforge.messages import (
    BuildMessage,
    BuildRequest,
    ErrorMessage,
    TerminalMessage,
    is_terminal,
    outcome_message,
    progress_message,
)
from bitforge.pipeline import PipelineCoordinator, StageAdapters

Isolation = Literal["process", "thread"]
AdapterFactory = Callable[[], StageAdapters]
MessageCallback = Callable[[BuildMessage], None]

DEFAULT_POLL_INTERVAL_SEC = 0.1
DEFAULT_CLOSE_TIMEOUT_SEC = 5.0

logger = logging.getLogger(__name__)


class ChannelError(RuntimeError):
    """Base exception for channel misuse and failures."""


class ChannelBusyError(ChannelError):
    """Raised when a run is started while another run is in flight."""


class ChannelClosedError(ChannelError):
    """Raised when a closed or dead channel is asked to run a build."""


def default_adapters(toolchain: ToolchainConfig | None, scratch_dir: Path | None = None) -> StageAdapters:
    """Build the engine adapters for a worker.

    Without a configured packing environment directory, the environment is
    created below ``scratch_dir`` so the channel can remove it even when the
    worker is terminated.
    """
    config = toolchain or ToolchainConfig()
    if scratch_dir is not None and config.pack.env_dir is None:
        pack = config.pack.model_copy(update={"env_dir": scratch_dir / "pack_env"})
        config = config.model_copy(update={"pack": pack})
    return StageAdapters.from_config(config)


def execute_request(
    request: BuildRequest,
    adapters: StageAdapters,
    emit: Callable[[BuildMessage], None],
) -> None:
    """Run one build and emit its progress and terminal messages."""
    coordinator = PipelineCoordinator(adapters)
    try:
        outcome = coordinator.run(
            request.files,
            request.params,
            on_progress=lambda event: emit(progress_message(event)),
        )
    except Exception as exc:  # noqa: BLE001 - every run must end with a terminal message
        logger.exception("Build run crashed")
        emit(ErrorMessage(message=f"{type(exc).__name__}: {exc}", stage=coordinator.current_stage))
        return
    emit(outcome_message(outcome))


def _worker_loop(requests: Any, responses: Any, adapter_factory: AdapterFactory) -> None:
    adapters = adapter_factory()
    try:
        while True:
            request = requests.get()
            if request is None:
                break
            execute_request(request, adapters, responses.put)
    finally:
        adapters.close()


class BuildRun:
    """Handle for one in-flight build.

    Messages can be consumed with :meth:`messages` (blocking iterator),
    :meth:`poll` (non-blocking) or an ``on_message`` callback; the first two
    consume from the same inbox.
    """

    def __init__(self, request: BuildRequest, on_message: MessageCallback | None = None) -> None:
        self.request = request
        self._on_message = on_message
        self._inbox: queue.Queue[BuildMessage] = queue.Queue()
        self._done = threading.Event()
        self._terminal: TerminalMessage | None = None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def terminal(self) -> TerminalMessage | None:
        return self._terminal

    def _deliver(self, message: BuildMessage) -> None:
        self._inbox.put(message)
        if self._on_message is not None:
            try:
                self._on_message(message)
            except Exception:  # noqa: BLE001 - a faulty host callback must not stall the relay
                logger.exception("on_message callback failed")
        if is_terminal(message):
            self._terminal = message  # type: ignore[assignment]
            self._done.set()

    def messages(self, timeout: float | None = None) -> Iterator[BuildMessage]:
        """Yield messages as they arrive, ending after the terminal message.

        Raises:
            TimeoutError: If no message arrives within ``timeout`` seconds.
        """
        while True:
            try:
                message = self._inbox.get(timeout=timeout)
            except queue.Empty as exc:
                raise TimeoutError(f"no build message within {timeout} seconds") from exc
            yield message
            if is_terminal(message):
                return

    def poll(self) -> list[BuildMessage]:
        """Return the messages that have already arrived, without blocking."""
        arrived: list[BuildMessage] = []
        while True:
            try:
                arrived.append(self._inbox.get_nowait())
            except queue.Empty:
                return arrived

    def wait(self, timeout: float | None = None) -> TerminalMessage:
        """Block until the run has finished and return its terminal message.

        Raises:
            TimeoutError: If the run does not finish within ``timeout`` seconds.
        """
        if not self._done.wait(timeout):
            raise TimeoutError(f"build did not finish within {timeout} seconds")
        assert self._terminal is not None
        return self._terminal


class BuildChannel:
    """Explicit handle on one background build worker.

    Attributes:
        isolation: ``"process"`` (default) or ``"thread"``.
        toolchain: Toolchain configuration the worker builds its adapters from.
    """

    def __init__(
        self,
        toolchain: ToolchainConfig | None = None,
        *,
        isolation: Isolation = "process",
        adapter_factory: AdapterFactory | None = None,
        mp_context: str | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SEC,
    ) -> None:
        if isolation not in ("process", "thread"):
            raise ValueError(f"Unsupported channel isolation: {isolation}")
        self.isolation = isolation
        self.toolchain = toolchain
        self.poll_interval = poll_interval
        self._adapter_factory = adapter_factory
        self._mp_context = mp_context
        self._worker: Any = None
        self._requests: Any = None
        self._responses: Any = None
        self._active: BuildRun | None = None
        self._relay_thread: threading.Thread | None = None
        self._scratch_dir: Path | None = None
        self._closed = False
        self._dead = False
        self._lock = threading.Lock()

    def __enter__(self) -> BuildChannel:
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def alive(self) -> bool:
        return self._worker is not None and not self._dead and not self._closed and self._worker.is_alive()

    @property
    def dead(self) -> bool:
        return self._dead

    @property
    def busy(self) -> bool:
        return self._active is not None

    def open(self) -> None:
        """Start the background worker (idempotent)."""
        with self._lock:
            self._check_usable()
            if self._worker is not None:
                return
            adapter_factory = self._adapter_factory
            if adapter_factory is None:
                self._scratch_dir = Path(tempfile.mkdtemp(prefix="bitforge_channel_"))
                adapter_factory = functools.partial(default_adapters, self.toolchain, self._scratch_dir)
            if self.isolation == "process":
                ctx = multiprocessing.get_context(self._mp_context)
                self._requests = ctx.Queue()
                self._responses = ctx.Queue()
                self._worker = ctx.Process(
                    target=_worker_loop,
                    args=(self._requests, self._responses, adapter_factory),
                    name="bitforge-build-worker",
                    daemon=True,
                )
            else:
                self._requests = queue.Queue()
                self._responses = queue.Queue()
                self._worker = threading.Thread(
                    target=_worker_loop,
                    args=(self._requests, self._responses, adapter_factory),
                    name="bitforge-build-worker",
                    daemon=True,
                )
            self._worker.start()
            logger.debug("Started %s build worker", self.isolation)

    def run(self, request: BuildRequest, on_message: MessageCallback | None = None) -> BuildRun:
        """Start a build and return immediately.

        Raises:
            ChannelBusyError: If another run on this channel is in flight.
            ChannelClosedError: If the channel was closed or its worker died.
        """
        self.open()
        with self._lock:
            self._check_usable()
            if self._active is not None:
                raise ChannelBusyError("a build is already running on this channel")
            build_run = BuildRun(request, on_message)
            self._active = build_run
            self._requests.put(request)
            relay = threading.Thread(target=self._relay, args=(build_run,), name="bitforge-relay", daemon=True)
            self._relay_thread = relay
            relay.start()
        return build_run

    def close(self, timeout: float = DEFAULT_CLOSE_TIMEOUT_SEC) -> None:
        """Stop the worker. Further runs raise :class:`ChannelClosedError`.

        A run still in flight on a process worker is ended with a terminal
        :class:`~bitforge.messages.ErrorMessage` once the worker is gone.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            worker = self._worker
            relay = self._relay_thread
        if worker is None:
            return
        if worker.is_alive():
            self._requests.put(None)
            worker.join(timeout)
        if self.isolation == "process":
            if worker.is_alive():
                logger.warning("Build worker did not stop within %.1fs; terminating", timeout)
                worker.terminate()
                worker.join(timeout)
            # The relay must finish the run before the queues go away.
            if relay is not None and relay is not threading.current_thread():
                relay.join(timeout)
            self._requests.close()
            self._responses.close()
        if self._scratch_dir is not None and not worker.is_alive():
            shutil.rmtree(self._scratch_dir, ignore_errors=True)
            logger.debug("Removed channel scratch directory %s", self._scratch_dir)
            self._scratch_dir = None
        logger.debug("Closed %s build worker", self.isolation)

    def _check_usable(self) -> None:
        if self._dead:
            raise ChannelClosedError("build worker died; create a new channel")
        if self._closed:
            raise ChannelClosedError("channel is closed")

    def _relay(self, build_run: BuildRun) -> None:
        try:
            finished = self._relay_messages(build_run)
        except (EOFError, OSError, ValueError) as exc:
            # The response queue was closed or broken under us.
            logger.error("Lost the build worker's response queue: %s", exc)
            finished = False
        if finished:
            return
        exitcode = getattr(self._worker, "exitcode", None)
        detail = f" (exit code {exitcode})" if exitcode is not None else ""
        logger.error("Build worker exited unexpectedly%s", detail)
        self._finish(build_run, ErrorMessage(message=f"build worker exited unexpectedly{detail}"), dead=True)

    def _relay_messages(self, build_run: BuildRun) -> bool:
        """Deliver messages until the terminal one; ``False`` if the worker died first."""
        while True:
            try:
                message = self._responses.get(timeout=self.poll_interval)
            except queue.Empty:
                if self._worker.is_alive():
                    continue
                return self._drain(build_run)
            if is_terminal(message):
                self._finish(build_run, message)
                return True
            build_run._deliver(message)

    def _drain(self, build_run: BuildRun) -> bool:
        # Messages sent just before the worker exited may still be in flight.
        while True:
            try:
                message = self._responses.get(timeout=self.poll_interval)
            except queue.Empty:
                return False
            if is_terminal(message):
                self._finish(build_run, message)
                return True
            build_run._deliver(message)

    def _finish(self, build_run: BuildRun, message: BuildMessage, *, dead: bool = False) -> None:
        # Release the channel before the host sees the terminal message.
        with self._lock:
            self._active = None
            if dead:
                self._dead = True
        build_run._deliver(message)


__all__ = [
    "DEFAULT_POLL_INTERVAL_SEC",
    "AdapterFactory",
    "BuildChannel",
    "BuildRun",
    "ChannelBusyError",
    "ChannelClosedError",
    "ChannelError",
    "Isolation",
    "MessageCallback",
    "default_adapters",
    "execute_request",
]
