"""
Compiled Artifact Registry

Process-wide table from identifier to loaded native entry point. Entries
are only ever added, through insert_if_absent(), so an identifier names
at most one artifact for the life of the process.

The registry is constructed once and handed to the evaluator. Its lock
is held across check-then-build-then-insert so that concurrent requests
for the same identifier build it once.
"""

import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from eval_errors import NotFoundError
from runtime_values import RuntimeValue


@dataclass
class CompiledArtifact:
    """A loaded entry point: a zero-argument function producing one runtime value"""
    identifier: str
    entry: Callable[[], RuntimeValue]
    path: Optional[str] = None
    invoked: bool = False
    # Keeps the module handle and the ctypes callbacks handed to native code alive
    keepalive: List[object] = field(default_factory=list, repr=False)

    def run(self) -> RuntimeValue:
        self.invoked = True
        return self.entry()


class ArtifactRegistry:
    """Append-only identifier -> CompiledArtifact table"""

    def __init__(self):
        self._artifacts: Dict[str, CompiledArtifact] = {}
        self.lock = threading.RLock()

    def lookup(self, identifier: str) -> Optional[CompiledArtifact]:
        return self._artifacts.get(identifier)

    def lookup_or_fail(self, identifier: str) -> CompiledArtifact:
        artifact = self.lookup(identifier)
        if artifact is None:
            raise NotFoundError(
                f"Could not find compiled entry point associated to {identifier}"
            )
        return artifact

    def contains(self, identifier: str) -> bool:
        return identifier in self._artifacts

    def insert_if_absent(self, identifier: str, artifact: CompiledArtifact) -> CompiledArtifact:
        """Register artifact unless identifier is taken; return the resident one"""
        with self.lock:
            return self._artifacts.setdefault(identifier, artifact)

    def names(self) -> List[str]:
        with self.lock:
            return list(self._artifacts)

    def __len__(self):
        return len(self._artifacts)
