from __future__ import annotations

import uuid


def new_action_id() -> str:
    return uuid.uuid4().hex
