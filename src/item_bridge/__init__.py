"""Item Bridge - Migrate app items between two platform instances."""

import logging
import warnings

__version__ = "0.1.0"
__author__ = "Item Bridge Team"
__license__ = "Apache-2.0"

# Keep HTTP library logging out of the console
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpcore.connection").setLevel(logging.WARNING)
logging.getLogger("httpcore.http11").setLevel(logging.WARNING)

warnings.filterwarnings("ignore", category=DeprecationWarning, module="httpx")
