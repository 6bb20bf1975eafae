"""Client-side upload queue and pre-upload trimming."""

from .precheck import PreparedClip, capture_thumbnail, precheck_video, prepare_clip
from .transport import HttpUploadTransport, UploadTransportError, categorize_error
from .types import QueueConfig, RetryPolicy, TrimMetadata, UploadSource
from .upload_queue import VideoUploadQueue
