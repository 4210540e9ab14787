"""genpipe - resilient generation calls and grid-to-scene artifact assembly.

Wraps unreliable generative provider calls (timeouts, bounded retries,
streamed responses), recovers structured documents from model text, and
turns a composite grid image into ordered panels and video scenes.
"""

import logging

__version__ = "0.1.0"

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())
