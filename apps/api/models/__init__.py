"""Models package."""

from .video_asset import VideoAsset
from .video_view import VideoView
from .upload_session import UploadSession, UploadPart
from .webhook_event import WebhookEvent
