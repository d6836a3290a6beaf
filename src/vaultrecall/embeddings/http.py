from __future__ import annotations

import json
import urllib.request
from typing import Any, Optional


def post_json(url: str, payload: dict[str, Any], timeout_s: float,
              headers: Optional[dict[str, str]] = None) -> Any:
    """POST a JSON body and decode the JSON reply. HTTP errors raise urllib.error.HTTPError."""
    data = json.dumps(payload).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/json", **(headers or {})},
        method="POST",
    )
    with urllib.request.urlopen(req, timeout=timeout_s) as resp:
        return json.loads(resp.read().decode("utf-8"))
