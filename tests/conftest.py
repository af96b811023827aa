import json
from typing import Any, Dict, List, Tuple

import pytest


def parse_sse(raw: bytes | str) -> List[Tuple[str, Dict[str, Any]]]:
    text = raw.decode() if isinstance(raw, bytes) else raw
    events: List[Tuple[str, Dict[str, Any]]] = []
    for chunk in text.split("\n\n"):
        if not chunk.strip():
            continue
        name = None
        data = None
        for line in chunk.split("\n"):
            if line.startswith("event: "):
                name = line[len("event: "):]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: "):])
        events.append((name, data))
    return events


@pytest.fixture
def sse_events():
    return parse_sse
