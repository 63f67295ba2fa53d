"""This module provides the SVSCamera class that continuously acquires video frames from a camera of the Surveyor SVS
board.

The SVS board does not stream video on its own. Instead, the camera interface runs a background thread that
repeatedly requests individual JPEG-compressed frames from the board, decodes them, and hands them to the registered
frame callbacks. The rate at which the frames are requested is controlled by the frame interval, and the quality and
resolution of the frames are configured through commands sent to the board.
"""

from enum import StrEnum
from typing import Any
from threading import Lock, Event, Thread
from collections.abc import Callable

import numpy as np
from numpy.typing import NDArray
from ataraxis_time import PrecisionTimer
from ataraxis_base_utilities import LogLevel, console

from .protocol import (
    RESPONSE_BUFFER_SIZE,
    CameraResolutions,
    decode_frame,
    build_quality_command,
    extract_image_payload,
    build_grab_frame_command,
    build_resolution_command,
)
from .communicator import Communicator, MockCommunicator

# The maximum duration of a single pacing sleep step, in milliseconds. This bounds the delay between signaling the
# acquisition thread to stop and the thread noticing the signal.
_PACING_STEP = 100

FrameCallback = Callable[[NDArray[np.uint8]], None]
ErrorCallback = Callable[[Exception], None]
FinishedCallback = Callable[["FinishReasons"], None]


class CameraStates(StrEnum):
    """Stores the lifecycle states of the SVSCamera class."""

    IDLE = "idle"
    """
    The camera is not acquiring frames and has no acquisition thread.
    """
    RUNNING = "running"
    """
    The acquisition thread is active and continuously acquires frames.
    """
    STOP_REQUESTED = "stop requested"
    """
    The acquisition thread has been signaled to stop, but has not terminated yet.
    """


class FinishReasons(StrEnum):
    """Stores the reasons reported to the finished callbacks when the camera stops acquiring frames."""

    END_OF_STREAM = "end of stream reached"
    """
    The video source has no more frames to provide.
    """
    STOPPED_BY_USER = "stopped by user"
    """
    The acquisition was stopped by the caller.
    """
    DEVICE_LOST = "device lost"
    """
    The connection to the video source was lost.
    """
    VIDEO_SOURCE_ERROR = "video source error"
    """
    The acquisition thread was terminated by an unhandled error.
    """


class _Accumulator:
    """Accumulates a thread-safe counter that is reset to zero every time it is read."""

    def __init__(self) -> None:
        self._value: int = 0
        self._lock: Lock = Lock()

    def add(self, amount: int) -> None:
        with self._lock:
            self._value += amount

    def reset(self) -> None:
        with self._lock:
            self._value = 0

    def swap(self) -> int:
        """Returns the accumulated value and resets the accumulator to zero as a single operation."""
        with self._lock:
            value = self._value
            self._value = 0
        return value


class SVSCamera:
    """Continuously acquires video frames from a camera of the Surveyor SVS board.

    The class creates a background thread that periodically requests new frames from the board. Each frame is decoded
    and passed to all frame callbacks, one after another, from the acquisition thread. The camera does not keep the
    frame after the callbacks return, so each callback that needs the frame later has to copy it. The next frame is only
    requested after all callbacks return, so slow callbacks directly reduce the acquisition rate.

    Notes:
        The correct way of stopping the camera is to call signal_to_stop(), followed by wait_for_stop(). The stop()
        method should only be used as the last resort, as it may abandon the acquisition thread.

        Setting a higher quality or resolution increases the time it takes the board to respond to other requests
        sent through the same connection.

    Args:
        communicator: The Communicator (or MockCommunicator) instance connected to the board port of the camera.
        frame_interval: The interval, in milliseconds, between requesting consecutive frames. Setting this to 0
            requests the frames as fast as possible.
        report_decode_errors: Determines whether frames that cannot be decoded are reported through the error
            callbacks. By default, such frames are dropped silently.
        stop_timeout: The maximum time, in seconds, the stop() method waits for the acquisition thread to terminate.

    Attributes:
        _communicator: Stores the transport used to exchange commands and responses with the board.
        _frame_interval: Stores the interval between requesting consecutive frames, in milliseconds.
        _report_decode_errors: Determines whether decoding failures are reported through the error callbacks.
        _stop_timeout: Stores the maximum time the stop() method waits for the acquisition thread, in seconds.
        _frames_received: Accumulates the number of frames received since the last read.
        _bytes_received: Accumulates the number of bytes received since the last read.
        _thread: Stores the acquisition thread or None, if the camera is not running.
        _stop_event: Stores the event used to signal the acquisition thread to stop or None, if the camera is not
            running.
        _lifecycle_lock: Serializes starting the camera and releasing the acquisition thread resources.
        _lock: Guards the frame interval and the callback lists.
        _frame_callbacks: Stores the callbacks that receive acquired frames.
        _error_callbacks: Stores the callbacks that receive acquisition errors.
        _finished_callbacks: Stores the callbacks notified when the acquisition thread terminates.
    """

    def __init__(
        self,
        communicator: Communicator | MockCommunicator,
        frame_interval: int = 0,
        *,
        report_decode_errors: bool = False,
        stop_timeout: float = 5.0,
    ) -> None:
        self._communicator: Communicator | MockCommunicator = communicator
        self._report_decode_errors: bool = report_decode_errors
        self._stop_timeout: float = stop_timeout

        self._frames_received: _Accumulator = _Accumulator()
        self._bytes_received: _Accumulator = _Accumulator()

        self._thread: Thread | None = None
        self._stop_event: Event | None = None
        self._lifecycle_lock: Lock = Lock()

        self._lock: Lock = Lock()
        self._frame_interval: int = 0
        self._frame_callbacks: list[FrameCallback] = []
        self._error_callbacks: list[ErrorCallback] = []
        self._finished_callbacks: list[FinishedCallback] = []

        # Uses the property setter to validate the input value.
        self.frame_interval = frame_interval

    def __repr__(self) -> str:
        """Returns the string representation of the SVSCamera instance."""
        return (
            f"SVSCamera(source={self.source}, state={self.state}, frame_interval={self.frame_interval} ms, "
            f"report_decode_errors={self._report_decode_errors})"
        )

    @property
    def source(self) -> str:
        """Returns the 'host:port' string of the board port used by the camera or 'unknown', if the transport is not
        connected.
        """
        endpoint = self._communicator.endpoint
        return endpoint if endpoint is not None else "unknown"

    @property
    def frame_interval(self) -> int:
        """Returns the interval between requesting consecutive frames, in milliseconds.

        If the interval is 100, the camera acquires at most 10 frames per second. The value of 0 (default) requests
        the frames as fast as possible.
        """
        with self._lock:
            return self._frame_interval

    @frame_interval.setter
    def frame_interval(self, value: int) -> None:
        """Sets the interval between requesting consecutive frames, in milliseconds."""
        if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 0:
            message = (
                f"Unable to set the frame interval of the SVSCamera for {self.source}. Expected a non-negative "
                f"integer number of milliseconds, but got {value} of type {type(value).__name__}."
            )
            console.error(message=message, error=ValueError)
            raise ValueError(message)  # pragma: no cover

        with self._lock:
            self._frame_interval = int(value)

    @property
    def frames_received(self) -> int:
        """Returns the number of frames received since the previous access to this property."""
        return self._frames_received.swap()

    @property
    def bytes_received(self) -> int:
        """Returns the number of bytes received since the previous access to this property."""
        return self._bytes_received.swap()

    @property
    def is_running(self) -> bool:
        """Returns True if the acquisition thread is alive.

        If the acquisition thread has already terminated, accessing this property also releases the thread resources,
        the same way as the wait_for_stop() method.
        """
        with self._lifecycle_lock:
            if self._thread is None:
                return False

            if self._thread.is_alive():
                return True

            # The thread is not running, releases its resources.
            self._free()
            return False

    @property
    def state(self) -> CameraStates:
        """Returns the current lifecycle state of the camera.

        A camera whose acquisition thread has terminated on its own is reported as idle, even before its resources
        are released.
        """
        thread = self._thread
        stop_event = self._stop_event
        if thread is None or stop_event is None or not thread.is_alive():
            return CameraStates.IDLE
        if stop_event.is_set():
            return CameraStates.STOP_REQUESTED
        return CameraStates.RUNNING

    def add_frame_callback(self, callback: FrameCallback) -> None:
        """Registers the callback that receives every acquired frame.

        The callback is called from the acquisition thread with the decoded frame, a (height, width, 3) NumPy array
        that uses the BGR channel order.
        """
        with self._lock:
            self._frame_callbacks.append(callback)

    def remove_frame_callback(self, callback: FrameCallback) -> None:
        """Unregisters the frame callback. Does nothing if the callback is not registered."""
        with self._lock:
            if callback in self._frame_callbacks:
                self._frame_callbacks.remove(callback)

    def add_error_callback(self, callback: ErrorCallback) -> None:
        """Registers the callback that receives the errors encountered by the acquisition thread.

        The errors do not terminate the acquisition thread, which keeps requesting frames from the board.
        """
        with self._lock:
            self._error_callbacks.append(callback)

    def remove_error_callback(self, callback: ErrorCallback) -> None:
        """Unregisters the error callback. Does nothing if the callback is not registered."""
        with self._lock:
            if callback in self._error_callbacks:
                self._error_callbacks.remove(callback)

    def add_finished_callback(self, callback: FinishedCallback) -> None:
        """Registers the callback that receives the reason the acquisition thread has terminated."""
        with self._lock:
            self._finished_callbacks.append(callback)

    def remove_finished_callback(self, callback: FinishedCallback) -> None:
        """Unregisters the finished callback. Does nothing if the callback is not registered."""
        with self._lock:
            if callback in self._finished_callbacks:
                self._finished_callbacks.remove(callback)

    def start(self) -> None:
        """Starts the acquisition thread and returns.

        Resets the received frames and bytes counters. Does nothing if the camera is already running.

        Raises:
            ConnectionError: If the transport is not connected to the board. This happens after the board connection
                is closed, in which case a new SVSCamera instance has to be obtained from the reconnected board.
        """
        with self._lifecycle_lock:
            if self._thread is not None:
                if self._thread.is_alive():
                    return

                # Releases the resources of the thread that has already terminated on its own.
                self._free()

            if self._communicator.endpoint is None:
                message = (
                    "Unable to start the SVSCamera. The camera is not connected to the SVS board. Connect to the "
                    "board and obtain a new camera instance before starting the acquisition."
                )
                console.error(message=message, error=ConnectionError)
                raise ConnectionError(message)  # pragma: no cover

            self._frames_received.reset()
            self._bytes_received.reset()

            self._stop_event = Event()
            self._thread = Thread(
                target=self._acquisition_loop, args=(self._stop_event,), name=self.source, daemon=True
            )
            self._thread.start()

        console.echo(message=f"SVSCamera for {self.source}: started.", level=LogLevel.INFO)

    def signal_to_stop(self) -> None:
        """Signals the acquisition thread to stop and returns without waiting for the thread to terminate."""
        stop_event = self._stop_event
        if self._thread is not None and stop_event is not None:
            stop_event.set()

    def wait_for_stop(self) -> None:
        """Blocks until the acquisition thread terminates and releases its resources.

        This method should be called after signal_to_stop(), as otherwise it blocks indefinitely.
        """
        thread = self._thread
        if thread is None:
            return

        thread.join()
        with self._lifecycle_lock:
            if self._thread is thread:
                self._free()

    def stop(self, timeout: float | None = None) -> None:
        """Stops the acquisition thread and releases its resources.

        Notes:
            The thread is signaled to stop and given at most 'timeout' seconds to terminate. If it does not terminate
            in time, for example, because it is blocked by an unresponsive board, the thread is abandoned. The
            abandoned thread terminates on its own once the blocking call returns. Prefer calling signal_to_stop()
            followed by wait_for_stop().

        Args:
            timeout: The maximum time, in seconds, to wait for the acquisition thread to terminate. If not provided,
                uses the stop timeout specified at initialization.
        """
        if not self.is_running:
            return

        thread = self._thread
        self.signal_to_stop()
        if thread is None:
            return  # pragma: no cover

        thread.join(timeout=self._stop_timeout if timeout is None else timeout)
        if thread.is_alive():
            message = (
                f"SVSCamera for {self.source}: the acquisition thread did not stop in time and was abandoned. It will "
                f"terminate once the pending exchange with the board completes."
            )
            console.echo(message=message, level=LogLevel.WARNING)

        with self._lifecycle_lock:
            if self._thread is thread:
                self._free()

    def set_quality(self, quality: int) -> None:
        """Sets the JPEG compression quality of the acquired frames.

        Notes:
            This method can be called while the camera is running. The new quality applies to the frames acquired
            after the board processes the command.

        Args:
            quality: The quality level to set, from 1 (highest quality) to 8 (lowest quality).

        Raises:
            ValueError: If the quality level is outside the supported range. In this case, nothing is sent to the
                board.
        """
        self._communicator.send(build_quality_command(quality))

    def set_resolution(self, resolution: CameraResolutions) -> None:
        """Sets the resolution of the acquired frames.

        Args:
            resolution: The CameraResolutions member that specifies the resolution to use.
        """
        self._communicator.send(build_resolution_command(resolution))

    def _free(self) -> None:
        """Releases the acquisition thread resources. Must be called while holding the lifecycle lock."""
        self._thread = None
        self._stop_event = None

    def _acquisition_loop(self, stop_event: Event) -> None:
        """Continuously requests, decodes, and delivers frames until signaled to stop.

        Notes:
            This method runs in the acquisition thread. The stop event is passed in instead of being read from the
            instance, as the instance releases its reference to the event when the thread is abandoned.

        Args:
            stop_event: The event that signals the thread to stop.
        """
        # Measures the time it takes to download and process each frame.
        timer = PrecisionTimer("ms")

        # The buffer is reused for all frames.
        buffer = bytearray(RESPONSE_BUFFER_SIZE)
        request = build_grab_frame_command()

        reason = FinishReasons.STOPPED_BY_USER
        try:
            while not stop_event.is_set():
                timer.reset()

                # Transport failures and malformed responses are retried immediately, without pacing.
                try:
                    bytes_read = self._communicator.send_and_receive(request, buffer)
                    self._bytes_received.add(bytes_read)
                    payload = extract_image_payload(buffer, bytes_read)
                except Exception as error:
                    self._report_error(error)
                    continue

                if payload is None:
                    continue

                # Skips the frame if the thread was signaled to stop while waiting for the board.
                if stop_event.is_set():
                    break

                # Frames that fail to decode or to be processed by the callbacks are still paced.
                try:
                    self._deliver_frame(payload)
                except Exception as error:
                    self._report_error(error)
                self._pace(stop_event=stop_event, elapsed=timer.elapsed)

        # If an error escapes the loop, reports it as the reason for termination before re-raising it.
        except BaseException:
            reason = FinishReasons.VIDEO_SOURCE_ERROR
            raise

        finally:
            self._notify_finished(reason)

    def _deliver_frame(self, payload: memoryview) -> None:
        """Decodes the frame payload and passes the decoded frame to all frame callbacks."""
        frame = decode_frame(payload)
        if frame is None:
            if self._report_decode_errors:
                raise ValueError(f"Unable to decode the {len(payload)}-byte frame received from {self.source}.")
            return

        self._frames_received.add(1)
        for callback in self._snapshot(self._frame_callbacks):
            callback(frame)

    def _pace(self, stop_event: Event, elapsed: int) -> None:
        """Sleeps for the remainder of the frame interval, in steps of at most 100 milliseconds.

        Args:
            stop_event: The event that signals the thread to stop. Sleeping is aborted as soon as it is set.
            elapsed: The time, in milliseconds, spent on acquiring and processing the current frame.
        """
        interval = self.frame_interval
        if interval == 0:
            return

        remaining = interval - elapsed
        while remaining > 0 and not stop_event.is_set():
            step = min(remaining, _PACING_STEP)
            if stop_event.wait(timeout=step / 1000):
                break
            remaining -= _PACING_STEP

    def _report_error(self, error: Exception) -> None:
        """Passes the error encountered by the acquisition thread to all error callbacks."""
        console.echo(
            message=f"SVSCamera for {self.source}: failed to receive a video frame. {error}", level=LogLevel.DEBUG
        )
        for callback in self._snapshot(self._error_callbacks):
            callback(error)

    def _notify_finished(self, reason: FinishReasons) -> None:
        """Notifies all finished callbacks that the acquisition thread is terminating."""
        console.echo(message=f"SVSCamera for {self.source}: stopped ({reason}).", level=LogLevel.INFO)
        for callback in self._snapshot(self._finished_callbacks):
            callback(reason)

    def _snapshot(self, callbacks: list[Any]) -> tuple[Any, ...]:
        """Returns a copy of the callback list, which allows modifying the list while the callbacks are called."""
        with self._lock:
            return tuple(callbacks)
