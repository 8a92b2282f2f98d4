"""
Identifier generation for feed instances and connections.

Connection keys are sent to the server as ``connId`` so that several client
instances sharing one account do not collide.
"""

from __future__ import annotations

import time
from uuid import uuid4


def generate_instance_id(prefix: str) -> str:
    """Return ``<prefix>_<epoch ms>_<9 random chars>``."""
    ts_ms = int(time.time() * 1000)
    return f"{prefix}_{ts_ms}_{uuid4().hex[:9]}"


def connection_key(instance_id: str, connection_id: int) -> str:
    return f"{instance_id}_{connection_id}"
