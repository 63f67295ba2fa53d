"""Provides a Model Context Protocol (MCP) server for agentic interaction with the library.

This module exposes the SVS board connection, camera stream management, and camera configuration functionality through
the MCP protocol, enabling AI agents to programmatically interact with the SVS cameras.
"""

from typing import Any, Literal
from pathlib import Path
from threading import Lock

import cv2
import numpy as np
from numpy.typing import NDArray
from mcp.server.fastmcp import FastMCP

from .svs import SVS
from .camera import SVSCamera
from .protocol import CameraResolutions

# Initializes the MCP server instance.
mcp = FastMCP(name="surveyor-video", json_response=True)

# Module-level state for board and stream management.
_active_board: SVS | None = None
_active_camera: SVSCamera | None = None
_latest_frame: NDArray[Any] | None = None
_frame_lock = Lock()


def _store_frame(frame: NDArray[np.uint8]) -> None:
    """Keeps a copy of the most recently acquired frame for the save_snapshot tool."""
    global _latest_frame
    with _frame_lock:
        _latest_frame = frame.copy()


def _get_camera(camera: str) -> SVSCamera:
    """Returns the interface of the requested board camera."""
    if _active_board is None:
        raise ConnectionError("Not connected to the SVS board.")
    if camera.lower() == "right":
        return _active_board.get_right_camera()
    return _active_board.get_left_camera()


@mcp.tool()
def connect_board(address: str, timeout: float = 5.0) -> str:
    """Connects to the SVS board at the specified address.

    Only one board can be connected at a time.

    Args:
        address: The IP address or the host name of the SVS board.
        timeout: The time, in seconds, to wait for the board to connect or to respond to a request. Defaults to 5.
    """
    global _active_board

    if _active_board is not None:
        return f"Error: Board already connected\n• Address: {_active_board.address}\n• Disconnect it first"

    board = SVS(timeout=timeout)
    try:
        board.connect(address=address)
    except Exception as e:
        return f"Error: Connection failed\n• Details: {e}"

    _active_board = board
    return f"Board Connected\n• Address: {address}"


@mcp.tool()
def disconnect_board() -> str:
    """Stops the active stream (if any) and disconnects from the SVS board."""
    global _active_board, _active_camera

    if _active_board is None:
        return "Error: No board connected"

    try:
        _active_board.disconnect()
    except Exception as e:
        return f"Error: Failed to disconnect\n• Details: {e}"
    finally:
        _active_board = None
        _active_camera = None

    return "Board Disconnected\n• Streams stopped\n• Connections closed"


@mcp.tool()
def start_stream(camera: Literal["left", "right"] = "left", frame_interval: int = 0) -> str:
    """Starts acquiring frames from the specified camera of the connected board.

    Only one stream can be active at a time.

    Args:
        camera: The board camera to acquire the frames from ('left' or 'right'). Defaults to 'left'.
        frame_interval: The interval between requesting consecutive frames, in milliseconds. Setting this to 0
            (default) requests frames as fast as possible.
    """
    global _active_camera

    if _active_camera is not None and _active_camera.is_running:
        return "Error: Stream already active\n• Stop the current stream before starting a new one"

    try:
        svs_camera = _get_camera(camera)
        svs_camera.frame_interval = frame_interval
        svs_camera.remove_frame_callback(_store_frame)
        svs_camera.add_frame_callback(_store_frame)
        svs_camera.start()
    except Exception as e:
        return f"Error: Failed to start stream\n• Details: {e}"

    _active_camera = svs_camera
    return f"Stream Started\n• Camera: {camera}\n• Source: {svs_camera.source}\n• Frame interval: {frame_interval} ms"


@mcp.tool()
def stop_stream() -> str:
    """Stops the active stream and waits for the acquisition to terminate."""
    global _active_camera

    if _active_camera is None:
        return "Error: No active stream"

    try:
        _active_camera.signal_to_stop()
        _active_camera.wait_for_stop()
    except Exception as e:
        return f"Error: Failed to stop stream\n• Details: {e}"
    finally:
        _active_camera = None

    return "Stream Stopped"


@mcp.tool()
def set_stream_quality(quality: int, camera: Literal["left", "right"] = "left") -> str:
    """Sets the JPEG quality of the frames acquired by the specified camera.

    Args:
        quality: The quality level, from 1 (highest quality) to 8 (lowest quality).
        camera: The board camera to configure ('left' or 'right'). Defaults to 'left'.
    """
    try:
        _get_camera(camera).set_quality(quality)
    except Exception as e:
        return f"Error: Failed to set quality\n• Details: {e}"
    return f"Quality Set\n• Camera: {camera}\n• Quality: {quality}"


@mcp.tool()
def set_stream_resolution(
    resolution: Literal["tiny", "small", "medium", "large"], camera: Literal["left", "right"] = "left"
) -> str:
    """Sets the resolution of the frames acquired by the specified camera.

    Args:
        resolution: The frame resolution: 'tiny' (160x120), 'small' (320x240), 'medium' (640x480), or 'large'
            (1280x1024).
        camera: The board camera to configure ('left' or 'right'). Defaults to 'left'.
    """
    try:
        member = CameraResolutions[resolution.upper()]
        _get_camera(camera).set_resolution(member)
    except KeyError:
        return f"Error: Unknown resolution\n• Resolution: {resolution}"
    except Exception as e:
        return f"Error: Failed to set resolution\n• Details: {e}"
    return f"Resolution Set\n• Camera: {camera}\n• Resolution: {member.width}×{member.height} px"


@mcp.tool()
def get_stream_status() -> str:
    """Returns the status of the board connection and the active stream.

    The reported frame and byte counts cover the period since the previous status request.
    """
    if _active_board is None:
        return "Stream Status: Inactive\n• No board connected"

    if _active_camera is None:
        return f"Stream Status: Inactive\n• Board: {_active_board.address}\n• No active stream"

    return (
        f"Stream Status: {'Active' if _active_camera.is_running else 'Stopped'}\n"
        f"• Source: {_active_camera.source}\n"
        f"• State: {_active_camera.state}\n"
        f"• Frames received: {_active_camera.frames_received}\n"
        f"• Bytes received: {_active_camera.bytes_received}"
    )


@mcp.tool()
def save_snapshot(file_path: str) -> str:
    """Saves the most recently acquired frame as an image file.

    Important:
        The AI agent calling this tool MUST ask the user to provide the file path before calling this tool.

    Args:
        file_path: The path to the output image file. The image format is determined by the file extension, for
            example '.png' or '.jpg'.
    """
    with _frame_lock:
        frame = _latest_frame

    if frame is None:
        return "Error: No frame available\n• Start a stream first using start_stream"

    path = Path(file_path)
    if not path.parent.exists():
        return f"Error: Directory not found\n• Path: {path.parent}"

    try:
        saved = cv2.imwrite(str(path), frame)
    except cv2.error as e:
        return f"Error: Failed to save the snapshot\n• Details: {e}"
    if not saved:
        return f"Error: Failed to save the snapshot\n• Path: {path}"

    return f"Snapshot Saved\n• Path: {path}\n• Resolution: {frame.shape[1]}×{frame.shape[0]} px"


def run_server(transport: Literal["stdio", "sse", "streamable-http"] = "stdio") -> None:
    """Starts the MCP server with the specified transport.

    Args:
        transport: The transport protocol to use. Supported values are 'stdio' for standard input/output communication
            and 'streamable-http' for HTTP-based communication.
    """
    mcp.run(transport=transport)
