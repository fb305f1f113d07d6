from dataclasses import dataclass
from pathlib import Path

def increment_path(path: str | Path, exist_ok: bool = False) -> Path:
    path = Path(path)
    if exist_ok or not path.exists():
        path.mkdir(parents=True, exist_ok=True)
        return path
    base, name = path.parent, path.name
    i = 2
    while (base / f"{name}{i}").exists():
        i += 1
    run_dir = base / f"{name}{i}"
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir

@dataclass(frozen=True)
class RunPaths:
    """Fixed file layout of one training run."""
    root: Path

    @property
    def weights(self) -> Path:
        return self.root / "weights"

    @property
    def best(self) -> Path:
        return self.weights / "best.pt"

    @property
    def last(self) -> Path:
        return self.weights / "last.pt"

    @property
    def results(self) -> Path:
        return self.root / "results.csv"

    @property
    def args(self) -> Path:
        return self.root / "args.yaml"

    def create(self) -> "RunPaths":
        self.weights.mkdir(parents=True, exist_ok=True)
        return self
