"""A Python library that continuously acquires video frames from the cameras of the Surveyor Stereo Vision System
(SVS) robotics board.

The library polls the board for JPEG-compressed frames from a background thread, decodes them, and delivers the decoded
frames to user callbacks while the camera quality, resolution, and frame rate are configured from the caller's thread.
"""

from .svs import SVS, LEFT_CAMERA_PORT, RIGHT_CAMERA_PORT
from .camera import SVSCamera, CameraStates, FinishReasons
from .protocol import Commands, CameraResolutions
from .communicator import Communicator, MockCommunicator

__all__ = [
    "LEFT_CAMERA_PORT",
    "RIGHT_CAMERA_PORT",
    "SVS",
    "CameraResolutions",
    "CameraStates",
    "Commands",
    "Communicator",
    "FinishReasons",
    "MockCommunicator",
    "SVSCamera",
]
