"""Application modules.

- transcoding: Upload admission, job queue, worker pool and job status
"""
