"""Per-texture outcome records and the batch report."""

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass, field
from typing import List, Optional, Tuple

logger = logging.getLogger("ktx2_pipeline")

STATUS_COMPRESSED = "compressed"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


def format_bytes(num_bytes: int) -> str:
    if num_bytes < 0:
        return "n/a"
    size = float(num_bytes)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if size < 1024.0 or unit == "TiB":
            if unit == "B":
                return f"{int(size)} {unit}"
            return f"{size:.2f} {unit}"
        size /= 1024.0
    return f"{int(num_bytes)} B"


def format_size_change(before_bytes: int, after_bytes: int) -> str:
    if before_bytes < 0 or after_bytes < 0:
        return "size=n/a"
    delta = after_bytes - before_bytes
    delta_sign = "+" if delta >= 0 else "-"
    delta_text = f"{delta_sign}{format_bytes(abs(delta))}"
    before_text = format_bytes(before_bytes)
    after_text = format_bytes(after_bytes)
    if before_bytes > 0:
        pct = (delta / before_bytes) * 100.0
        return f"size={before_text}->{after_text} ({delta_text}, {pct:+.1f}%)"
    return f"size={before_text}->{after_text} ({delta_text})"


@dataclass
class TextureOutcome:
    """Terminal state of one texture in a batch run."""

    name: str
    status: str
    reason: str = ""
    resize: Optional[Tuple[int, int]] = None
    width: int = 0
    height: int = 0
    input_bytes: int = 0
    output_bytes: int = 0
    uri: Optional[str] = None
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status != STATUS_FAILED

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.resize is not None:
            data["resize"] = list(self.resize)
        return data


@dataclass
class BatchReport:
    """Ordered outcomes of a batch run."""

    step: str = "texture_compress_ktx2"
    outcomes: List[TextureOutcome] = field(default_factory=list)

    def add(self, outcome: TextureOutcome) -> TextureOutcome:
        self.outcomes.append(outcome)
        return outcome

    def _names(self, status: str) -> List[str]:
        return [o.name for o in self.outcomes if o.status == status]

    @property
    def compressed(self) -> List[str]:
        return self._names(STATUS_COMPRESSED)

    @property
    def skipped(self) -> List[str]:
        return self._names(STATUS_SKIPPED)

    @property
    def failed(self) -> List[str]:
        return self._names(STATUS_FAILED)

    @property
    def ok(self) -> bool:
        return not self.failed

    def get(self, name: str) -> Optional[TextureOutcome]:
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        return None

    def summary(self) -> str:
        before = sum(o.input_bytes for o in self.outcomes if o.status == STATUS_COMPRESSED)
        after = sum(o.output_bytes for o in self.outcomes if o.status == STATUS_COMPRESSED)
        return (
            f"{self.step}: compressed={len(self.compressed)}, "
            f"skipped={len(self.skipped)}, failed={len(self.failed)}, "
            f"{format_size_change(before, after)}"
        )

    def to_dict(self) -> dict:
        return {
            "step": self.step,
            "compressed": self.compressed,
            "skipped": self.skipped,
            "failed": self.failed,
            "textures": [o.to_dict() for o in self.outcomes],
        }

    def save(self, path: str) -> None:
        """Write the report as JSON (atomic replace)."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        tmp_path = f"{path}.tmp.{os.getpid()}.{threading.get_ident()}"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        finally:
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass
        logger.info("Results saved: %s", path)
