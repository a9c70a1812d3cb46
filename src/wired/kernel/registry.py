"""Instance slot registry.

Each running supervisor owns one small integer slot, persisted as its own file
`wired-instance-<slot>.json` under the instance directory. Only the owner ever
writes its file; every supervisor reads all of them when picking a slot.
Records whose owner is gone (crash) are purged during that scan, since nothing
else would reclaim them.
"""
from __future__ import annotations

import json
import logging
import os
import re
import socket
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from pydantic import ValidationError

from ..contracts.v1 import ChildPids, InstanceRecord, MigrationMarker
from ..util.file_lock import locked
from ..util.fs import atomic_write_json, unlink_quiet
from ..util.proc import pid_alive
from ..util.time import utc_now_iso
from .errors import RegistryCorruption

logger = logging.getLogger("wired.registry")

_RECORD_RE = re.compile(r"^wired-instance-(\d+)\.json$")
MIGRATION_FILE = "wired-migration.json"


class InstanceRegistry:
    def __init__(
        self,
        instance_dir: Path,
        *,
        host: Optional[str] = None,
        pid: Optional[int] = None,
        probe: Callable[[int], bool] = pid_alive,
    ) -> None:
        self.instance_dir = Path(instance_dir)
        self.host = host or socket.gethostname()
        self.pid = int(pid or os.getpid())
        self._probe = probe

    @property
    def lock_path(self) -> Path:
        return self.instance_dir / "registry.lock"

    def record_path(self, slot: int) -> Path:
        return self.instance_dir / f"wired-instance-{int(slot)}.json"

    def _read(self, path: Path, slot: int) -> InstanceRecord:
        try:
            doc = json.loads(path.read_text(encoding="utf-8"))
            rec = InstanceRecord.model_validate(doc)
        except (OSError, ValueError, ValidationError) as e:
            raise RegistryCorruption(f"unreadable instance record: {path.name}", details={"error": str(e)}) from e
        if rec.slot != slot:
            raise RegistryCorruption(
                f"slot mismatch in {path.name}",
                details={"file_slot": slot, "record_slot": rec.slot},
            )
        return rec

    def _scan(self) -> Dict[int, InstanceRecord]:
        """Read all records, deleting the corrupt and the orphaned ones."""
        live: Dict[int, InstanceRecord] = {}
        if not self.instance_dir.exists():
            return live
        for path in sorted(self.instance_dir.iterdir()):
            m = _RECORD_RE.match(path.name)
            if not m:
                continue
            slot = int(m.group(1))
            try:
                rec = self._read(path, slot)
            except RegistryCorruption as e:
                logger.warning("purging corrupt record: %s", e.message, extra={"slot": slot})
                unlink_quiet(path)
                continue
            if rec.host and rec.host != self.host:
                # Another machine's pid space; cannot be probed from here.
                live[slot] = rec
                continue
            if not self._probe(rec.owner_pid):
                logger.info("purging orphaned slot %d (pid %d gone)", slot, rec.owner_pid, extra={"slot": slot})
                unlink_quiet(path)
                continue
            live[slot] = rec
        return live

    def acquire_slot(self, *, channels: Optional[Mapping[str, str]] = None) -> int:
        """Claim the lowest free slot >= 1 and persist its record."""
        self.instance_dir.mkdir(parents=True, exist_ok=True)
        with locked(self.lock_path):
            live = self._scan()
            slot = 1
            while slot in live:
                slot += 1
            now = utc_now_iso()
            rec = InstanceRecord(
                slot=slot,
                instance_name=f"wired-{slot}",
                owner_pid=self.pid,
                channels=dict(channels or {}),
                created_at=now,
                updated_at=now,
                host=self.host,
            )
            atomic_write_json(self.record_path(slot), rec.model_dump())
        logger.info("acquired slot %d", slot, extra={"slot": slot})
        return slot

    def release_slot(self, slot: int) -> None:
        if unlink_quiet(self.record_path(slot)):
            logger.info("released slot %d", slot, extra={"slot": slot})

    def load(self, slot: int) -> Optional[InstanceRecord]:
        path = self.record_path(slot)
        if not path.exists():
            return None
        try:
            return self._read(path, slot)
        except RegistryCorruption as e:
            logger.warning("%s", e.message, extra={"slot": slot})
            return None

    def update_slot(
        self,
        slot: int,
        *,
        child_pids: Optional[Mapping[str, Optional[int]]] = None,
        channels: Optional[Mapping[str, str]] = None,
    ) -> InstanceRecord:
        """Rewrite this slot's record with current child pids and/or channels."""
        rec = self.load(slot)
        if rec is None:
            rec = InstanceRecord(slot=slot, instance_name=f"wired-{slot}", owner_pid=self.pid, host=self.host)
        updates: Dict[str, object] = {"updated_at": utc_now_iso()}
        if child_pids is not None:
            merged = rec.child_pids.model_dump()
            merged.update({k: v for k, v in child_pids.items() if k in merged})
            updates["child_pids"] = ChildPids.model_validate(merged)
        if channels is not None:
            updates["channels"] = {**rec.channels, **{k: str(v) for k, v in channels.items()}}
        rec = rec.model_copy(update=updates)
        atomic_write_json(self.record_path(slot), rec.model_dump())
        return rec

    def list_records(self) -> List[InstanceRecord]:
        if not self.instance_dir.exists():
            return []
        with locked(self.lock_path):
            live = self._scan()
        return [live[k] for k in sorted(live)]

    def write_migration_marker(self, target_host: str, target_path: str, *, instance: Optional[int] = None) -> Path:
        marker = MigrationMarker(
            target_host=target_host,
            target_path=target_path,
            source_host=self.host,
            instance=instance,
        )
        path = self.instance_dir / MIGRATION_FILE
        atomic_write_json(path, marker.model_dump())
        logger.info("migration requested: %s:%s", target_host, target_path)
        return path
