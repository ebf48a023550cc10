from __future__ import annotations

import asyncio
from typing import Dict, Tuple


EntryIdentity = Tuple[str, str, str]

_entry_locks: Dict[EntryIdentity, asyncio.Lock] = {}
_locks_lock = asyncio.Lock()


async def get_entry_lock(identity: EntryIdentity) -> asyncio.Lock:
    """Get or create the lock serialising reconciliation of one file."""
    async with _locks_lock:
        if identity not in _entry_locks:
            _entry_locks[identity] = asyncio.Lock()
        return _entry_locks[identity]


async def remove_entry_lock(identity: EntryIdentity) -> None:
    """Drop the lock of a file whose ledger entry was removed."""
    async with _locks_lock:
        lock = _entry_locks.get(identity)
        if lock is not None and not lock.locked():
            _entry_locks.pop(identity, None)
