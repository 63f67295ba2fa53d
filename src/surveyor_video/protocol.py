"""This module provides the command table and the response framing used to communicate with the cameras of the
Surveyor Stereo Vision System (SVS) board.

The SVS board uses a simple request / response protocol, where most commands are encoded as a single ASCII byte. The
video stream is acquired by repeatedly requesting individual JPEG-compressed frames, which the board sends back
wrapped into a short header. The functions from this module build the commands sent to the board and extract the
compressed image payload from the raw responses.
"""

from enum import IntEnum
from typing import Any

import cv2
import numpy as np
from numpy.typing import NDArray
from ataraxis_base_utilities import console

# The signature that prefixes every image response sent by the board.
FRAME_SIGNATURE = b"##IMJ"

# The size of the image response header. The compressed image payload starts immediately after the header.
FRAME_HEADER_SIZE = 10

# The offset and the size of the little-endian unsigned integer that stores the size of the image payload.
_PAYLOAD_SIZE_OFFSET = 6
_PAYLOAD_SIZE_LENGTH = 4

# The capacity of the buffer used to receive image responses. The largest (1280x1024) frames fit comfortably.
RESPONSE_BUFFER_SIZE = 768 * 1024

# The range of quality levels accepted by the board. 1 is the highest quality, 8 is the lowest.
MINIMUM_QUALITY = 1
MAXIMUM_QUALITY = 8


class Commands(IntEnum):
    """Stores the byte-codes of the camera commands supported by the SVS board."""

    GRAB_FRAME = ord("I")
    """
    Requests the board to send the most recent frame acquired by the camera as a JPEG-compressed image response.
    """
    SET_QUALITY = ord("q")
    """
    Sets the JPEG compression quality. This command is followed by a second byte that encodes the quality level.
    """


class CameraResolutions(IntEnum):
    """Stores the frame resolutions supported by the cameras of the SVS board.

    The value of each member is the byte-code of the command that switches the camera to the matching resolution.
    """

    TINY = ord("a")
    """
    160x120 pixels.
    """
    SMALL = ord("b")
    """
    320x240 pixels.
    """
    MEDIUM = ord("c")
    """
    640x480 pixels.
    """
    LARGE = ord("d")
    """
    1280x1024 pixels.
    """

    @property
    def width(self) -> int:
        """Returns the width of the frames acquired at this resolution, in pixels."""
        return _resolution_dimensions[self][0]

    @property
    def height(self) -> int:
        """Returns the height of the frames acquired at this resolution, in pixels."""
        return _resolution_dimensions[self][1]


_resolution_dimensions: dict[int, tuple[int, int]] = {
    CameraResolutions.TINY: (160, 120),
    CameraResolutions.SMALL: (320, 240),
    CameraResolutions.MEDIUM: (640, 480),
    CameraResolutions.LARGE: (1280, 1024),
}


def build_grab_frame_command() -> bytes:
    """Builds the command that requests a single frame from the camera."""
    return bytes([Commands.GRAB_FRAME])


def build_quality_command(quality: int) -> bytes:
    """Builds the command that sets the JPEG compression quality of the acquired frames.

    The quality level is transmitted as the ASCII digit that represents it.

    Args:
        quality: The quality level to set, from 1 (highest quality) to 8 (lowest quality).

    Returns:
        The two-byte command to send to the board.

    Raises:
        ValueError: If the quality level is outside the supported range.
    """
    if isinstance(quality, bool) or not isinstance(quality, (int, np.integer)):
        message = (
            f"Unable to set the camera quality. Expected an integer quality level from {MINIMUM_QUALITY} to "
            f"{MAXIMUM_QUALITY}, but got {quality} of type {type(quality).__name__}."
        )
        console.error(message=message, error=ValueError)
        raise ValueError(message)  # pragma: no cover

    if not MINIMUM_QUALITY <= quality <= MAXIMUM_QUALITY:
        message = (
            f"Unable to set the camera quality. The quality level must be between {MINIMUM_QUALITY} and "
            f"{MAXIMUM_QUALITY}, but got {quality}."
        )
        console.error(message=message, error=ValueError)
        raise ValueError(message)  # pragma: no cover

    return bytes([Commands.SET_QUALITY, ord("0") + int(quality)])


def build_resolution_command(resolution: CameraResolutions | int) -> bytes:
    """Builds the command that switches the camera to the requested frame resolution.

    Args:
        resolution: The CameraResolutions member (or its byte-code) that specifies the resolution to use.

    Returns:
        The single-byte command to send to the board.

    Raises:
        ValueError: If the input does not match any supported resolution.
    """
    try:
        resolution = CameraResolutions(resolution)
    except ValueError:
        message = (
            f"Unable to set the camera resolution. Expected one of the CameraResolutions members "
            f"({', '.join(member.name for member in CameraResolutions)}), but got {resolution}."
        )
        console.error(message=message, error=ValueError)
        raise ValueError(message)  # pragma: no cover

    return bytes([resolution])


def build_frame_response(payload: bytes, resolution: CameraResolutions = CameraResolutions.SMALL) -> bytes:
    """Wraps the compressed image payload into the header used by the board for image responses.

    This function mirrors the board-side behavior and is used to simulate the board during testing.

    Args:
        payload: The JPEG-compressed image data.
        resolution: The resolution of the image, stored in the header's reserved byte.

    Returns:
        The complete image response, as it would be received from the board.
    """
    return (
        FRAME_SIGNATURE
        + bytes([resolution])
        + len(payload).to_bytes(_PAYLOAD_SIZE_LENGTH, "little", signed=False)
        + bytes(payload)
    )


def get_payload_size(header: bytes | bytearray | memoryview) -> int:
    """Returns the size of the image payload declared in the header of the image response, in bytes."""
    size_field = header[_PAYLOAD_SIZE_OFFSET : _PAYLOAD_SIZE_OFFSET + _PAYLOAD_SIZE_LENGTH]
    return int.from_bytes(size_field, "little", signed=False)


def extract_image_payload(buffer: bytearray | memoryview, bytes_read: int) -> memoryview | None:
    """Extracts the compressed image payload from the board's response.

    Responses that are too short to hold an image or do not start with the image signature are not image responses
    and are discarded by returning None.

    Args:
        buffer: The buffer filled with the board's response.
        bytes_read: The number of response bytes written to the buffer.

    Returns:
        A memoryview over the image payload stored inside the buffer, or None if the response is not an image response.
        The view references the buffer, so its contents are only valid until the buffer is reused.

    Raises:
        ValueError: If the payload size declared in the header exceeds the amount of received data.
    """
    if bytes_read <= FRAME_HEADER_SIZE:
        return None

    view = memoryview(buffer)
    if view[: len(FRAME_SIGNATURE)] != FRAME_SIGNATURE:
        return None

    payload_size = get_payload_size(view)
    payload_end = FRAME_HEADER_SIZE + payload_size
    if payload_end > bytes_read or payload_end > len(view):
        raise ValueError(
            f"Malformed image response: the header declares a {payload_size}-byte payload, but only "
            f"{bytes_read - FRAME_HEADER_SIZE} payload bytes were received."
        )

    return view[FRAME_HEADER_SIZE:payload_end]


def decode_frame(payload: bytes | memoryview) -> NDArray[np.uint8] | None:
    """Decodes the JPEG-compressed image payload into a frame array.

    Args:
        payload: The compressed image data.

    Returns:
        The decoded frame as a (height, width, 3) NumPy array that uses the BGR channel order, or None if the payload
        cannot be decoded.
    """
    encoded: NDArray[Any] = np.frombuffer(payload, dtype=np.uint8)
    if encoded.size == 0:
        return None

    try:
        frame: NDArray[np.uint8] | None = cv2.imdecode(encoded, cv2.IMREAD_COLOR)
    except cv2.error:
        return None

    return frame
