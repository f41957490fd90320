"""Video Transcoding Backend Application.

Accepts uploaded videos, transcodes them with FFmpeg on a bounded worker
pool and stores originals and outputs in S3-compatible object storage.

Modules:
    - core: Configuration, logging, metrics, Redis, storage, Celery setup
    - modules.transcoding: Job admission, queueing, worker pool and status
"""

__version__ = "0.1.0"
