"""Token format for continuation records.

Tokens are opaque to callers: ``cont:<32 hex chars>``. Calls submitted
without a label are named ``Continuation-<n>`` by position.
"""

import uuid

TOKEN_PREFIX = "cont:"
AUTO_LABEL_PREFIX = "Continuation-"


def new_token() -> str:
    return f"{TOKEN_PREFIX}{uuid.uuid4().hex}"


def auto_label(index: int) -> str:
    return f"{AUTO_LABEL_PREFIX}{index}"
