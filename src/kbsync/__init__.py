"""
KBSync -- local/remote synchronization for KB projects.

Mirrors a project workspace (settings, instructions, icon and the
functions/frontend source tree) against its remote object store.
Sensitive fields never leave the machine in plaintext.
"""

import os

__version__ = "0.1.0"

KBSYNC_HOME = os.environ.get("KBSYNC_HOME", "~/.kbsync")
