"""Test support: an in-memory store and a scripted remote calendar."""

from calsync.testing.memory import InMemorySyncStore
from calsync.testing.remote import ScriptedRemote

__all__ = ["InMemorySyncStore", "ScriptedRemote"]
