"""This module provides the command-line interface (CLI) of the library."""

from queue import Full, Empty, Queue
from typing import Any, Literal
from threading import Event

import cv2
import click
import numpy as np
from numpy.typing import NDArray
from ataraxis_time import PrecisionTimer
from ataraxis_base_utilities import LogLevel, console

from .svs import SVS
from .camera import SVSCamera, FinishReasons
from .protocol import CameraResolutions
from .mcp_server import run_server
from .communicator import MockCommunicator

# Ensures that displayed CLICK help messages are formatted according to the lab standard.
CONTEXT_SETTINGS = dict(max_content_width=120)

# The interval, in milliseconds, between reporting the acquisition statistics to the user.
_REPORT_INTERVAL = 1000


@click.group("svs", context_settings=CONTEXT_SETTINGS)
def svs_cli() -> None:
    """This Command-Line Interface (CLI) functions as the entry-point for interfacing with the cameras of the Surveyor
    SVS board.
    """


@svs_cli.command("live")
@click.option(
    "-a",
    "--address",
    type=str,
    default=None,
    help="The IP address or the host name of the SVS board. Required unless the mock board is used.",
)
@click.option(
    "-c",
    "--camera",
    "camera_side",
    type=click.Choice(["left", "right"]),
    default="left",
    show_default=True,
    help="The board camera to acquire the frames from.",
)
@click.option(
    "-m",
    "--mock",
    is_flag=True,
    default=False,
    help="Acquires synthetic frames from the simulated board instead of connecting to the physical board.",
)
@click.option(
    "-q",
    "--quality",
    type=click.IntRange(min=1, max=8),
    default=None,
    help="The JPEG quality of the acquired frames, from 1 (highest) to 8 (lowest). If not provided, the board keeps "
    "using the current quality.",
)
@click.option(
    "-r",
    "--resolution",
    type=click.Choice([member.name.lower() for member in CameraResolutions]),
    default=None,
    help="The resolution of the acquired frames: tiny (160x120), small (320x240), medium (640x480), or large "
    "(1280x1024). If not provided, the board keeps using the current resolution.",
)
@click.option(
    "-i",
    "--frame-interval",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="The interval between requesting consecutive frames, in milliseconds. 0 requests frames as fast as possible.",
)
@click.option(
    "-d",
    "--display-frames",
    is_flag=True,
    default=False,
    help="Determines whether to display the acquired frames in real time. Press 'Esc' in the window to quit.",
)
@click.option(
    "-t",
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=5.0,
    show_default=True,
    help="The time, in seconds, to wait for the board to connect or to respond to a request.",
)
def live_run(
    address: str | None,
    camera_side: str,
    mock: bool,
    quality: int | None,
    resolution: str | None,
    frame_interval: int,
    display_frames: bool,
    timeout: float,
) -> None:
    """Acquires frames from the SVS camera and reports the acquisition rate until interrupted with 'Ctrl+C'.

    Notes:
        This CLI script is primarily intended for checking the camera connection and configuration. Use the API for
        production applications.
    """
    if not mock and address is None:
        raise click.UsageError("The board address (-a) is required unless the mock board (-m) is used.")

    console.enable()  # Enables console output

    board: SVS | None = None
    if mock:
        camera = SVSCamera(communicator=MockCommunicator(response_delay=0.02))
    else:
        board = SVS(timeout=timeout)
        board.connect(address=address)
        camera = board.get_left_camera() if camera_side == "left" else board.get_right_camera()

    camera.frame_interval = frame_interval
    if quality is not None:
        camera.set_quality(quality)
    if resolution is not None:
        camera.set_resolution(CameraResolutions[resolution.upper()])

    # Only the most recent frame is kept for display. Frames that arrive while the window is busy are skipped.
    display_queue: Queue[NDArray[Any]] | None = Queue(maxsize=1) if display_frames else None
    error_queue: Queue[Exception] = Queue()
    finished = Event()

    def on_frame(frame: NDArray[np.uint8]) -> None:
        if display_queue is not None:
            try:
                display_queue.put_nowait(frame.copy())
            except Full:
                pass

    def on_finished(reason: FinishReasons) -> None:
        finished.set()

    camera.add_frame_callback(on_frame)
    camera.add_error_callback(error_queue.put)
    camera.add_finished_callback(on_finished)

    camera.start()
    console.echo(
        message=f"Live SVS camera {camera.source}: started. Press 'Ctrl+C' to stop.", level=LogLevel.SUCCESS
    )

    window_name = f"SVS camera {camera.source}"
    if display_frames:
        cv2.namedWindow(winname=window_name, flags=cv2.WINDOW_NORMAL)

    report_timer = PrecisionTimer("ms")
    try:
        while not finished.is_set():
            if display_queue is not None:
                try:
                    cv2.imshow(winname=window_name, mat=display_queue.get(timeout=0.05))
                except Empty:
                    pass

                # Manual termination is done through the window GUI.
                if cv2.waitKey(1) & 0xFF == 27:
                    break
            else:
                finished.wait(timeout=0.05)

            if report_timer.elapsed >= _REPORT_INTERVAL:
                _report_statistics(camera=camera, elapsed=report_timer.elapsed, error_queue=error_queue)
                report_timer.reset()

    except KeyboardInterrupt:
        pass

    finally:
        console.echo(message="Stopping the Live SVS camera...")
        camera.signal_to_stop()
        camera.wait_for_stop()
        if display_frames:
            cv2.destroyWindow(winname=window_name)
        if board is not None:
            board.disconnect()

    console.echo(message="Live SVS camera: terminated.", level=LogLevel.SUCCESS)


def _report_statistics(camera: SVSCamera, elapsed: int, error_queue: Queue[Exception]) -> None:
    """Prints the acquisition rate and the number of errors encountered since the previous report."""
    seconds = elapsed / 1000
    frame_rate = camera.frames_received / seconds
    data_rate = camera.bytes_received / 1024 / seconds

    errors: list[Exception] = []
    while True:
        try:
            errors.append(error_queue.get_nowait())
        except Empty:
            break

    message = f"{camera.source}: {frame_rate:.1f} frames / second, {data_rate:.1f} KB / second."
    if errors:
        message += f" {len(errors)} errors, last error: {errors[-1]}"
        console.echo(message=message, level=LogLevel.WARNING)
    else:
        console.echo(message=message, level=LogLevel.INFO)


@svs_cli.command("mcp")
@click.option(
    "-t",
    "--transport",
    type=click.Choice(["stdio", "sse", "streamable-http"]),
    default="stdio",
    show_default=True,
    help="The transport protocol used by the MCP server.",
)
def run_mcp_server(transport: Literal["stdio", "sse", "streamable-http"]) -> None:
    """Starts the Model Context Protocol (MCP) server that allows AI agents to control the SVS cameras."""
    run_server(transport=transport)
