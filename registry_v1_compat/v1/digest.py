"""Consistency digests v1 clients use to detect a stale local cache."""

from __future__ import annotations

import hashlib
from collections import Counter
from typing import Iterable

from .models import V1InstanceInfo


def application_digest(app_name: str, instances: Iterable[V1InstanceInfo]) -> str:
    """SHA-1 over the sorted (app, instance id, status) triples of one application.

    Depends only on member identity and status, so it changes exactly when one of
    those changes.
    """
    app_key = app_name.upper()
    triples = sorted((app_key, inst.instance_id, inst.status.value) for inst in instances)
    h = hashlib.sha1()
    for triple in triples:
        h.update("|".join(triple).encode("utf-8"))
        h.update(b"\n")
    return h.hexdigest()


def apps_hash_code(instances: Iterable[V1InstanceInfo]) -> str:
    """The v1 reconcile hash: status counts sorted by status name, e.g. 'DOWN_1_UP_3_'."""
    counts = Counter(inst.status.value for inst in instances)
    return "".join(f"{status}_{counts[status]}_" for status in sorted(counts))
