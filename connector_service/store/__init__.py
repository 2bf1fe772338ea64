"""Credential store backends."""

from .base import CredentialStore
from .memory import InMemoryCredentialStore
from .mongo import MongoCredentialStore

__all__ = ["CredentialStore", "InMemoryCredentialStore", "MongoCredentialStore"]
