"""Tests for the rally_sync package."""

import logging

# Cancelled reader/writer tasks on teardown are expected noise.
logging.getLogger("asyncio").setLevel(logging.ERROR)
