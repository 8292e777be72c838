"""Loading Rosetta problem text from files and example directories."""

from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

INPUT_SUFFIX = "_Input.md"
SOLUTION_SUFFIX = "_Solution.md"


@dataclass
class ProblemFile:
    """A problem statement on disk, with its reference solution if present."""
    name: str
    path: Path
    solution_path: Path | None = None

    def read(self) -> str:
        return load_problem(self.path)


def load_problem(path: str | Path) -> str:
    """
    Read raw problem text.

    Args:
        path: Text or Markdown file

    Returns:
        File content as a string

    Raises:
        ValueError: If the file is empty
    """
    text = Path(path).read_text(encoding="utf-8")
    if not text.strip():
        raise ValueError(f"Problem file is empty: {path}")
    return text


def list_examples(directory: str | Path) -> Iterator[ProblemFile]:
    """
    Yield example problems found in a directory, sorted by file name.

    Problem statements are files ending in `_Input.md`; a sibling
    `_Solution.md` file is attached when it exists.

    Args:
        directory: Directory to scan

    Yields:
        ProblemFile objects
    """
    root = Path(directory)
    if not root.is_dir():
        return

    for path in sorted(root.glob(f"*{INPUT_SUFFIX}")):
        name = path.name[: -len(INPUT_SUFFIX)]
        solution = path.with_name(name + SOLUTION_SUFFIX)
        yield ProblemFile(
            name=name,
            path=path,
            solution_path=solution if solution.exists() else None
        )


def find_example(directory: str | Path, name: str) -> ProblemFile | None:
    """Look up an example by name (with or without the `_Input.md` suffix)."""
    if name.endswith(INPUT_SUFFIX):
        name = name[: -len(INPUT_SUFFIX)]
    return next((p for p in list_examples(directory) if p.name == name), None)
