"""
Audit File Logger

Append-only JSONL trail of evaluation passes, firings and failures.
"""

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List


class AuditFile:
    """Append-only JSONL audit log."""

    def __init__(self, path: str = "rialo_audit.jsonl", verbose: bool = True):
        self.path = path
        self.verbose = verbose
        self._lock = threading.Lock()
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

    def log(self, entry: Dict):
        entry = dict(entry)
        entry["_logged_at"] = datetime.utcnow().isoformat()
        with self._lock:
            with open(self.path, "a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        if self.verbose:
            print(f"  📝 Audit logged: {entry.get('event', 'unknown')}")

    def read(self, limit: int = 50) -> List[Dict]:
        """Last `limit` entries, newest first."""
        entries = []
        try:
            with open(self.path, "r") as f:
                for line in f:
                    if line.strip():
                        entries.append(json.loads(line.strip()))
        except FileNotFoundError:
            return []
        return entries[-limit:][::-1]
