"""This module provides the transport classes used to exchange commands and responses with the cameras of the Surveyor
SVS board.

Each SVS camera is served by the board over a dedicated TCP port. The Communicator class manages one such connection
and exposes fire-and-forget and request / response exchanges. The MockCommunicator class simulates a connected board
and is used to test the camera interface without the physical hardware.
"""

import time
import select
import socket
from typing import Any
from itertools import cycle
from threading import Lock
from collections.abc import Iterable

import cv2
import numpy as np
from numpy.typing import NDArray
from ataraxis_time import PrecisionTimer
from ataraxis_base_utilities import LogLevel, console

from .protocol import (
    FRAME_SIGNATURE,
    FRAME_HEADER_SIZE,
    CameraResolutions,
    get_payload_size,
    build_frame_response,
)

# Determines the number of synthetic frames served by MockCommunicator instances.
_FRAME_POOL_SIZE = 10

# The size of the chunk used to discard stale data accumulated in the socket buffer.
_DISCARD_CHUNK_SIZE = 4096


class Communicator:
    """Manages the TCP connection to a single camera port of the SVS board.

    Both the camera acquisition thread and the control thread use the same connection, so all exchanges are
    serialized with a lock. Fire-and-forget commands may be answered by the board with short acknowledgements. These
    replies are discarded before the next request / response exchange to keep them from corrupting image responses.

    Args:
        timeout: The maximum time, in seconds, to wait for the board to accept the connection or to send the response.

    Attributes:
        _timeout: Stores the connection and response timeout, in seconds.
        _socket: Stores the connected socket or None, if the instance is not connected.
        _endpoint: Stores the 'host:port' string of the connected board or None, if the instance is not connected.
        _lock: Serializes all exchanges that use the connection.
    """

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout: float = timeout
        self._socket: socket.socket | None = None
        self._endpoint: str | None = None
        self._lock: Lock = Lock()

    def __repr__(self) -> str:
        """Returns the string representation of the Communicator instance."""
        return f"Communicator(endpoint={self._endpoint}, timeout={self._timeout} s, connected={self.is_connected})"

    def connect(self, host: str, port: int) -> None:
        """Connects to the camera port of the board.

        Args:
            host: The IP address or the host name of the board.
            port: The TCP port that serves the target camera.

        Raises:
            ConnectionError: If the instance is unable to connect to the board.
        """
        endpoint = f"{host}:{port}"

        # Prevents re-connecting to the same board.
        if self._socket is not None and self._endpoint == endpoint:
            return

        # Connecting to a new endpoint releases the previous connection.
        self.disconnect()

        try:
            connection = socket.create_connection((host, port), timeout=self._timeout)
        except OSError as error:
            message = f"Unable to connect to the SVS board at {endpoint}: {error}."
            console.error(message=message, error=ConnectionError)
            raise ConnectionError(message) from error  # pragma: no cover

        connection.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        with self._lock:
            self._socket = connection
            self._endpoint = endpoint

        console.echo(message=f"Connected to the SVS board at {endpoint}.", level=LogLevel.INFO)

    def disconnect(self) -> None:
        """Closes the connection to the board."""
        with self._lock:
            if self._socket is None:
                return

            try:
                self._socket.close()
            finally:
                endpoint = self._endpoint
                self._socket = None
                self._endpoint = None

        console.echo(message=f"Disconnected from the SVS board at {endpoint}.", level=LogLevel.INFO)

    @property
    def endpoint(self) -> str | None:
        """Returns the 'host:port' string of the connected board or None, if the instance is not connected."""
        return self._endpoint

    @property
    def is_connected(self) -> bool:
        """Returns True if the instance is connected to the board."""
        return self._socket is not None

    def send(self, command: bytes) -> None:
        """Sends the command to the board without waiting for the response.

        Args:
            command: The command to send.

        Raises:
            ConnectionError: If the instance is not connected or fails to send the command.
        """
        with self._lock:
            connection = self._require_connection()
            try:
                connection.sendall(command)
            except OSError as error:
                raise ConnectionError(f"Failed to send the command to the SVS board at {self._endpoint}.") from error

    def send_and_receive(self, command: bytes, buffer: bytearray) -> int:
        """Sends the command to the board and receives the response into the provided buffer.

        Generally, the response is whatever the board sends in reply to the command. For image responses, the method
        keeps receiving data until the whole image payload declared in the response header is received or the buffer
        is full.

        Args:
            command: The command to send.
            buffer: The buffer to fill with the response. Its size limits the size of the received response.

        Returns:
            The number of response bytes written to the buffer.

        Raises:
            ConnectionError: If the instance is not connected, the board closes the connection or does not respond
                before the timeout, or the exchange fails for any other reason.
        """
        with self._lock:
            connection = self._require_connection()
            view = memoryview(buffer)
            try:
                self._discard_pending(connection)
                connection.sendall(command)
                received = self._receive_into(connection, view, 0, len(view))

                # Keeps receiving until the header of a (potential) image response is complete.
                while received < FRAME_HEADER_SIZE and self._starts_like_image(view, received):
                    received = self._receive_into(connection, view, received, FRAME_HEADER_SIZE)

                # For image responses, keeps receiving until the whole payload is available or the buffer is full.
                if view[: len(FRAME_SIGNATURE)] == FRAME_SIGNATURE:
                    payload_size = get_payload_size(view)
                    expected = min(FRAME_HEADER_SIZE + payload_size, len(view))
                    while received < expected:
                        received = self._receive_into(connection, view, received, expected)

            except ConnectionError:
                raise
            except TimeoutError as error:
                raise ConnectionError(
                    f"The SVS board at {self._endpoint} did not respond within {self._timeout} seconds."
                ) from error
            except OSError as error:
                raise ConnectionError(
                    f"Failed to exchange data with the SVS board at {self._endpoint}: {error}."
                ) from error

        return received

    def _require_connection(self) -> socket.socket:
        """Returns the connected socket.

        Raises:
            ConnectionError: If the instance is not connected.
        """
        if self._socket is None:
            raise ConnectionError("Not connected to the SVS board. Call the connect() method first.")
        return self._socket

    def _receive_into(self, connection: socket.socket, view: memoryview, offset: int, limit: int) -> int:
        """Receives the next chunk of data into the view and returns the total number of bytes stored in the view.

        Raises:
            ConnectionError: If the board closes the connection.
        """
        chunk = connection.recv_into(view[offset:limit])
        if chunk == 0:
            raise ConnectionError(f"The SVS board at {self._endpoint} has closed the connection.")
        return offset + chunk

    @staticmethod
    def _starts_like_image(view: memoryview, received: int) -> bool:
        """Returns True if the received part of the response matches the beginning of the image signature."""
        prefix = bytes(view[: min(received, len(FRAME_SIGNATURE))])
        return FRAME_SIGNATURE.startswith(prefix)

    @staticmethod
    def _discard_pending(connection: socket.socket) -> None:
        """Discards all data that is already waiting in the socket buffer, such as acknowledgements of earlier
        fire-and-forget commands.
        """
        while True:
            readable, _, _ = select.select([connection], [], [], 0)
            if not readable:
                return
            if not connection.recv(_DISCARD_CHUNK_SIZE):
                raise ConnectionError("The SVS board has closed the connection.")


class MockCommunicator:
    """Simulates (mocks) the behavior of the Communicator class without the need to connect to the SVS board.

    This class is primarily used to test the SVSCamera class. It serves the scripted responses in a cycle, so that the
    camera interface can poll it for as long as necessary. Any response that is an exception instance is raised
    instead of being served, which simulates transport failures.

    Notes:
        If no responses are provided, the instance serves a reproducible pool of synthetic JPEG frames.

    Args:
        responses: The responses to serve to send_and_receive() calls, in order.
        endpoint: The simulated endpoint of the board. Setting this to None simulates a disconnected board.
        response_delay: The time, in seconds, each send_and_receive() call takes, which simulates the download time.
        resolution: The resolution of the synthetic frames served when no responses are provided.

    Attributes:
        _endpoint: Stores the simulated endpoint of the board.
        _response_delay: Stores the simulated duration of each request / response exchange, in milliseconds.
        _timer: Times the simulated request / response exchanges.
        _responses: Stores the iterator that cycles through the responses.
        _lock: Guards the records of the exchanged commands.
        _sent_commands: Stores all commands sent to the simulated board, in order.
        _request_times: Stores the perf_counter() timestamps of all send_and_receive() calls.
        _request_count: Tracks the number of served send_and_receive() calls.
    """

    def __init__(
        self,
        responses: Iterable[bytes | Exception] | None = None,
        endpoint: str | None = "mock:10001",
        response_delay: float = 0.0,
        resolution: CameraResolutions = CameraResolutions.SMALL,
    ) -> None:
        self._endpoint: str | None = endpoint
        self._response_delay: float = response_delay * 1000
        self._timer: PrecisionTimer = PrecisionTimer("ms")

        pool: tuple[bytes | Exception, ...]
        if responses is None:
            pool = self._generate_frame_pool(resolution=resolution)
        else:
            pool = tuple(responses)
        self._responses = cycle(pool) if pool else None

        self._lock: Lock = Lock()
        self._sent_commands: list[bytes] = []
        self._request_times: list[float] = []
        self._request_count: int = 0

    def __repr__(self) -> str:
        """Returns the string representation of the MockCommunicator instance."""
        return f"MockCommunicator(endpoint={self._endpoint}, requests={self._request_count})"

    @staticmethod
    def _generate_frame_pool(resolution: CameraResolutions) -> tuple[bytes, ...]:
        """Generates the pool of synthetic image responses served when the responses are not provided."""
        rng = np.random.default_rng(seed=42)  # Specifies a reproducible seed.
        frames: list[bytes] = []
        for _ in range(_FRAME_POOL_SIZE):
            image: NDArray[Any] = rng.integers(
                0, 256, size=(resolution.height, resolution.width, 3), dtype=np.uint8
            )
            _, encoded = cv2.imencode(".jpg", image)
            frames.append(build_frame_response(encoded.tobytes(), resolution=resolution))
        return tuple(frames)

    def connect(self, host: str, port: int) -> None:
        """Simulates connecting to the board."""
        self._endpoint = f"{host}:{port}"

    def disconnect(self) -> None:
        """Simulates disconnecting from the board."""
        self._endpoint = None

    @property
    def endpoint(self) -> str | None:
        """Returns the simulated endpoint of the board or None, if the instance is 'disconnected'."""
        return self._endpoint

    @property
    def is_connected(self) -> bool:
        """Returns True if the instance is 'connected' to the board."""
        return self._endpoint is not None

    @property
    def sent_commands(self) -> tuple[bytes, ...]:
        """Returns all commands sent to the simulated board, in order."""
        with self._lock:
            return tuple(self._sent_commands)

    @property
    def request_times(self) -> tuple[float, ...]:
        """Returns the perf_counter() timestamps of all request / response exchanges."""
        with self._lock:
            return tuple(self._request_times)

    @property
    def request_count(self) -> int:
        """Returns the number of served request / response exchanges."""
        with self._lock:
            return self._request_count

    def send(self, command: bytes) -> None:
        """Records the command sent to the simulated board."""
        if self._endpoint is None:
            raise ConnectionError("Not connected to the SVS board. Call the connect() method first.")
        with self._lock:
            self._sent_commands.append(bytes(command))

    def send_and_receive(self, command: bytes, buffer: bytearray) -> int:
        """Records the command and writes the next scripted response into the buffer.

        Returns:
            The number of response bytes written to the buffer.

        Raises:
            ConnectionError: If the instance is 'disconnected'.
            Exception: The next scripted response, if it is an exception instance.
        """
        if self._endpoint is None:
            raise ConnectionError("Not connected to the SVS board. Call the connect() method first.")

        with self._lock:
            self._sent_commands.append(bytes(command))
            self._request_times.append(time.perf_counter())

        # The board takes time to send the response. This is simulated by using the timer to block in-place until
        # the response delay expires.
        self._timer.reset()
        while self._timer.elapsed < self._response_delay:
            pass

        with self._lock:
            self._request_count += 1
            response = next(self._responses) if self._responses is not None else b""

        if isinstance(response, Exception):
            raise response

        size = min(len(response), len(buffer))
        buffer[:size] = response[:size]
        return size
