"""
StreamBot: queue-driven media playback into a live output sink.

Requested media items are played one at a time through a supervised ffmpeg
pipeline while skip, pause, resume and stop commands arrive concurrently.
"""

__version__ = "1.0.0"
