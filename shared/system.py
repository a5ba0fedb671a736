from __future__ import annotations
import os
import platform
import socket
import sys
import time
from typing import Any, Dict, Optional

from shared.config import CLIENT_VERSION, TransportConfig

_STARTED_AT = time.time()


def get_system_metadata(config: Optional[TransportConfig] = None) -> Dict[str, Any]:
    """
    Describe the host this agent runs on.

    The result is serialized and ciphered into the X-AUTH-DATA handshake header,
    so it must stay JSON-serializable.
    """
    metadata: Dict[str, Any] = {
        "hostname": socket.gethostname(),
        "platform": sys.platform,
        "os": platform.system(),
        "os_release": platform.release(),
        "arch": platform.machine(),
        "cpus": os.cpu_count() or 1,
        "pid": os.getpid(),
        "python": platform.python_version(),
        "client_version": CLIENT_VERSION,
        "uptime": round(time.time() - _STARTED_AT, 3),
    }
    if hasattr(os, "getloadavg"):
        metadata["loadavg"] = list(os.getloadavg())
    if config is not None:
        metadata["machine_name"] = config.machine_name
        metadata["public_key"] = config.public_key
    return metadata
