"""reelpipe: VOD ingestion, ABR transcoding and byte-range delivery.

Modules:
    - core: Configuration, database, Redis, Celery, logging, storage layout
    - modules.media: Media assets and their processing state
    - modules.transcoding: Processing pipeline and ffmpeg tooling
    - modules.notification: Completion events
    - modules.stream: HTTP media delivery
    - modules.cleanup: Orphan reaping and stalled run recovery
"""

__version__ = "0.1.0"
