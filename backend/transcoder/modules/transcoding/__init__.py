"""Transcoding module for video encoding jobs.

Accepts uploads, bounds concurrent FFmpeg encodes with a worker pool,
queues the overflow in FIFO order and tracks each job's status.
"""
