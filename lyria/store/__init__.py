"""Credential store: identities, linked accounts, sessions and one-time-code challenges.

Postgres drivers are imported lazily so the in-process backend works without them.
"""

from __future__ import annotations
