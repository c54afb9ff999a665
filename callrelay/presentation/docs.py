from __future__ import annotations

from typing import List


def get_openapi_tags() -> List[dict]:
    return [
        {"name": "presence", "description": "Online roster and active calls"},
        {"name": "webrtc", "description": "WebRTC вспомогательные"},
        {"name": "health", "description": "Health checks"},
    ]
