"""Models package."""

from .user import User
from .captain_video import CaptainVideo
from .video_telemetry_event import VideoTelemetryEvent
