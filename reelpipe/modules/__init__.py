"""Application modules.

- media: Media assets, renditions, processing state and the media API
- transcoding: Probing, ABR planning, HLS encoding and processing runs
- notification: Completion events
- stream: Byte-range media delivery
- cleanup: Orphaned output removal and stalled run recovery
"""
