"""This module provides the SVS class that manages the connection to the Surveyor Stereo Vision System (SVS) board and
the camera interfaces for its two cameras.
"""

from typing import NoReturn

from ataraxis_base_utilities import LogLevel, console

from .camera import SVSCamera
from .communicator import Communicator

# The TCP ports that serve the left and the right cameras of the board.
LEFT_CAMERA_PORT = 10001
RIGHT_CAMERA_PORT = 10002


class SVS:
    """Manages the connection to the Surveyor SVS board.

    The board serves each of its two cameras through a dedicated TCP port. This class maintains a separate connection
    to each port and provides the SVSCamera instances that acquire frames from the cameras. The two cameras are
    independent and are started and stopped separately.

    Notes:
        Disconnecting from the board stops both cameras. The camera instances obtained before disconnecting cannot be
        restarted, so new instances have to be obtained after reconnecting.

    Args:
        timeout: The maximum time, in seconds, to wait for the board to accept the connection or to send a response.

    Attributes:
        _timeout: Stores the connection and response timeout, in seconds.
        _address: Stores the address of the connected board or None, if the instance is not connected.
        _left_communicator: Stores the connection to the left camera port.
        _right_communicator: Stores the connection to the right camera port.
        _left_camera: Stores the left camera interface, once it is requested.
        _right_camera: Stores the right camera interface, once it is requested.
    """

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout: float = timeout
        self._address: str | None = None
        self._left_communicator: Communicator | None = None
        self._right_communicator: Communicator | None = None
        self._left_camera: SVSCamera | None = None
        self._right_camera: SVSCamera | None = None

    def __del__(self) -> None:
        """Releases the board connections when the instance is garbage-collected."""
        self.disconnect()

    def __repr__(self) -> str:
        """Returns the string representation of the SVS instance."""
        return f"SVS(address={self._address}, connected={self.is_connected})"

    @property
    def address(self) -> str | None:
        """Returns the address of the connected board or None, if the instance is not connected."""
        return self._address

    @property
    def is_connected(self) -> bool:
        """Returns True if the instance is connected to the board."""
        return self._address is not None

    def connect(self, address: str, left_port: int = LEFT_CAMERA_PORT, right_port: int = RIGHT_CAMERA_PORT) -> None:
        """Connects to both camera ports of the board.

        If the instance is already connected, closes the existing connections first.

        Args:
            address: The IP address or the host name of the board.
            left_port: The TCP port that serves the left camera.
            right_port: The TCP port that serves the right camera.

        Raises:
            ConnectionError: If the instance is unable to connect to either camera port.
        """
        self.disconnect()

        left = Communicator(timeout=self._timeout)
        right = Communicator(timeout=self._timeout)
        left.connect(host=address, port=left_port)
        try:
            right.connect(host=address, port=right_port)
        except ConnectionError:
            left.disconnect()
            raise

        self._left_communicator = left
        self._right_communicator = right
        self._address = address
        console.echo(message=f"SVS board at {address}: connected.", level=LogLevel.SUCCESS)

    def disconnect(self) -> None:
        """Stops both cameras and closes the connections to the board."""
        if self._address is None:
            return

        # Signals both cameras first, so that they wind down in parallel.
        cameras = [camera for camera in (self._left_camera, self._right_camera) if camera is not None]
        for camera in cameras:
            camera.signal_to_stop()
        for camera in cameras:
            camera.wait_for_stop()

        for communicator in (self._left_communicator, self._right_communicator):
            if communicator is not None:
                communicator.disconnect()

        console.echo(message=f"SVS board at {self._address}: disconnected.", level=LogLevel.SUCCESS)

        self._left_communicator = None
        self._right_communicator = None
        self._left_camera = None
        self._right_camera = None
        self._address = None

    def get_left_camera(self) -> SVSCamera:
        """Returns the interface of the left camera.

        Raises:
            ConnectionError: If the instance is not connected to the board.
        """
        if self._left_communicator is None:
            self._raise_not_connected()
        if self._left_camera is None:
            self._left_camera = SVSCamera(communicator=self._left_communicator)
        return self._left_camera

    def get_right_camera(self) -> SVSCamera:
        """Returns the interface of the right camera.

        Raises:
            ConnectionError: If the instance is not connected to the board.
        """
        if self._right_communicator is None:
            self._raise_not_connected()
        if self._right_camera is None:
            self._right_camera = SVSCamera(communicator=self._right_communicator)
        return self._right_camera

    @staticmethod
    def _raise_not_connected() -> NoReturn:
        message = "Unable to provide the SVS camera interface. Call the connect() method to connect to the board first."
        console.error(message=message, error=ConnectionError)
        raise ConnectionError(message)  # pragma: no cover
