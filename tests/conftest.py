"""Stores fixtures used by other tests. The loopback board server fixture simulates the TCP side of the SVS board, which
allows testing the transport classes without the physical hardware.
"""

import time
import socket
import contextlib
from threading import Thread

import cv2
import numpy as np
import pytest

from surveyor_video.protocol import CameraResolutions, build_frame_response


def encode_test_image(width: int = 64, height: int = 48, seed: int = 42) -> tuple[np.ndarray, bytes]:
    """Generates a random BGR image and returns it together with its JPEG-compressed representation."""
    rng = np.random.default_rng(seed=seed)
    image = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
    _, encoded = cv2.imencode(".jpg", image)
    return image, encoded.tobytes()


def wait_until(predicate, timeout: float = 5.0) -> bool:
    """Polls the predicate until it returns True or the timeout expires. Returns the last predicate value."""
    deadline = time.perf_counter() + timeout
    while time.perf_counter() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return bool(predicate())


class BoardServer:
    """Serves a single client connection the way an SVS camera port does.

    The server answers 'I' with the image response, sent in two chunks to exercise response reassembly. 'q' consumes
    the quality level byte and is acknowledged with '#q'. 'S' is never answered, and 'X' closes the connection. All
    other commands are acknowledged with '#' followed by the command.
    """

    def __init__(self, frame_response: bytes) -> None:
        self.frame_response = frame_response
        self.received: list[bytes] = []
        self._connection: socket.socket | None = None
        self._server = socket.create_server(("127.0.0.1", 0))
        self.port: int = self._server.getsockname()[1]
        self._thread = Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        try:
            connection, _ = self._server.accept()
        except OSError:
            return
        self._connection = connection

        # The client disconnecting at any point ends the session.
        with connection, contextlib.suppress(OSError):
            while True:
                command = connection.recv(1)
                if not command:
                    break

                self.received.append(command)
                if command == b"I":
                    half = len(self.frame_response) // 2
                    connection.sendall(self.frame_response[:half])
                    time.sleep(0.01)
                    connection.sendall(self.frame_response[half:])
                elif command == b"q":
                    self.received.append(connection.recv(1))
                    connection.sendall(b"#q")
                elif command == b"S":
                    continue
                elif command == b"X":
                    break
                else:
                    connection.sendall(b"#" + command)

    def close(self) -> None:
        # Shutting the sockets down wakes the server thread if it is blocked in accept() or recv().
        for sock in (self._server, self._connection):
            if sock is None:
                continue
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        self._server.close()
        self._thread.join(timeout=5)


@pytest.fixture()
def test_image() -> tuple[np.ndarray, bytes]:
    """Returns a random test image and its JPEG-compressed representation."""
    return encode_test_image()


@pytest.fixture()
def frame_response(test_image) -> bytes:
    """Returns the image response that carries the compressed test image."""
    return build_frame_response(test_image[1], resolution=CameraResolutions.TINY)


@pytest.fixture()
def board_server(frame_response):
    """Starts a loopback server that simulates one camera port of the SVS board."""
    server = BoardServer(frame_response=frame_response)
    yield server
    server.close()
