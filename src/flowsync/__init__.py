"""
FlowSync -- encrypted multi-device state sync for FlowReader.

Your reading state, on every device. Encrypted before it leaves.
The storage provider only ever sees an opaque blob.
"""

import os

__version__ = "0.1.0"
__author__ = "FlowReader"

FLOWSYNC_HOME = os.environ.get("FLOWSYNC_HOME", "~/.flowsync")
