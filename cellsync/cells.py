"""
Cells: the in-memory, ordered cell collection of one session.

Cells are frozen pydantic models. Every mutation of a CellStore replaces the
affected cell with a new snapshot and reports what changed, so a snapshot that
was handed to a client is never modified afterwards.
"""

from dataclasses import dataclass
from typing import Annotated, Any, Iterable, Iterator, Literal, Optional, Union

from markdown_it import MarkdownIt
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from cellsync.errors import (
    CellNotFound,
    DuplicateFilename,
    InvalidFilename,
    ValidationError,
)
from cellsync.utils import MANIFEST_FILENAME, randomid, valid_filename


_markdown = MarkdownIt("commonmark")


def parse_markdown(text: str) -> tuple[dict[str, Any], ...]:
    """Parse markdown into a flat block token stream."""
    return tuple(
        {
            "type": token.type,
            "tag": token.tag,
            "level": token.level,
            "content": token.content,
        }
        for token in _markdown.parse(text)
    )


class OutputChunk(BaseModel):
    """One write to stdout or stderr during an execution."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["stdout", "stderr"]
    data: str


class TitleCell(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=randomid)
    type: Literal["title"] = "title"
    text: str = ""


class MarkdownCell(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=randomid)
    type: Literal["markdown"] = "markdown"
    text: str = ""
    tokens: tuple[dict[str, Any], ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _tokenize(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("tokens"):
            data = {**data, "tokens": parse_markdown(data.get("text", ""))}
        return data


class CodeCell(BaseModel):
    """A Python source file executed against the session's context."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=randomid)
    type: Literal["code"] = "code"
    source: str = ""
    language: Literal["python"] = "python"
    filename: str
    stale: bool = False
    status: Literal["idle", "running"] = "idle"
    output: tuple[OutputChunk, ...] = ()


class PackageManifestCell(BaseModel):
    """The session's requirements.txt."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=randomid)
    type: Literal["requirements"] = "requirements"
    source: str = ""
    filename: Literal["requirements.txt"] = MANIFEST_FILENAME


Cell = Annotated[
    Union[TitleCell, MarkdownCell, CodeCell, PackageManifestCell],
    Field(discriminator="type"),
]

_cell_adapter = TypeAdapter(Cell)


def cell_from_dict(data: dict) -> Cell:
    """Create a cell of the right variant from its dictionary form."""
    return _cell_adapter.validate_python(data)


def cell_to_dict(cell: Cell) -> dict:
    """Convert to dictionary for serialization."""
    return cell.model_dump(mode="json")


# Attributes a client may change with update(), per cell type.
UPDATABLE_ATTRS = {
    "title": {"text"},
    "markdown": {"text"},
    "code": {"source", "filename"},
    "requirements": {"source"},
}


@dataclass(frozen=True)
class CellChange:
    """Description of one committed mutation, consumed by the broadcaster."""
    kind: Literal["inserted", "updated", "deleted", "moved"]
    cell: Cell
    index: int
    changed: tuple[str, ...] = ()
    from_index: Optional[int] = None

    def to_payload(self) -> dict:
        payload = {
            "cell": cell_to_dict(self.cell),
            "index": self.index,
        }
        if self.changed:
            payload["changed"] = list(self.changed)
        if self.from_index is not None:
            payload["fromIndex"] = self.from_index
        return payload


class CellStore:
    """
    Ordered collection of cells for one session.

    List order is display order and default execution order. The store
    enforces:
    - unique cell ids
    - unique, well-formed code cell filenames
    - at most one package manifest cell
    """

    def __init__(self, cells: Iterable[Cell] = ()):
        self._cells: list[Cell] = []
        for cell in cells:
            self.insert(len(self._cells), cell)

    def __len__(self) -> int:
        return len(self._cells)

    def __iter__(self) -> Iterator[Cell]:
        return iter(tuple(self._cells))

    @property
    def cells(self) -> tuple[Cell, ...]:
        return tuple(self._cells)

    def index_of(self, cell_id: str) -> int:
        for i, cell in enumerate(self._cells):
            if cell.id == cell_id:
                return i
        raise CellNotFound(cell_id)

    def get(self, cell_id: str) -> Cell:
        return self._cells[self.index_of(cell_id)]

    def find_by_filename(self, filename: str) -> Optional[Cell]:
        """Find the code or manifest cell backed by filename."""
        for cell in self._cells:
            if getattr(cell, "filename", None) == filename:
                return cell
        return None

    def manifest(self) -> Optional[PackageManifestCell]:
        for cell in self._cells:
            if cell.type == "requirements":
                return cell
        return None

    def code_cells(self) -> list[CodeCell]:
        return [cell for cell in self._cells if cell.type == "code"]

    def snapshot(self) -> tuple[Cell, ...]:
        return tuple(self._cells)

    def restore(self, snapshot: tuple[Cell, ...]) -> None:
        """Roll the store back to a previous snapshot."""
        self._cells = list(snapshot)

    # ------------------------------------------------------------------ #
    # Mutations
    # ------------------------------------------------------------------ #

    def _check_filename(self, filename: str, cell_id: Optional[str] = None) -> None:
        if not valid_filename(filename):
            raise InvalidFilename(
                f"Invalid filename {filename!r}: filename must consist of letters, "
                "numbers, underscores, dashes and must end with .py"
            )
        for other in self._cells:
            if other.id != cell_id and getattr(other, "filename", None) == filename:
                raise DuplicateFilename(f"Invalid filename {filename!r}: filename is not unique")

    def insert(self, position: int, cell: Cell) -> CellChange:
        """Insert a cell, clamping position to [0, len]."""
        if any(other.id == cell.id for other in self._cells):
            raise ValidationError(f"Cell id {cell.id!r} already exists")
        if cell.type == "code":
            self._check_filename(cell.filename)
        elif cell.type == "requirements" and self.manifest() is not None:
            raise DuplicateFilename(f"Session already has a {MANIFEST_FILENAME}")

        index = max(0, min(position, len(self._cells)))
        self._cells.insert(index, cell)
        return CellChange(kind="inserted", cell=cell, index=index)

    def update(self, cell_id: str, patch: dict[str, Any]) -> CellChange:
        """
        Apply a client patch to a cell.

        Changing the source of a code cell marks it stale. Resending an
        unchanged source leaves the stale flag alone.
        """
        index = self.index_of(cell_id)
        cell = self._cells[index]

        unknown = set(patch) - UPDATABLE_ATTRS[cell.type]
        if unknown:
            raise ValidationError(
                f"Cannot update {', '.join(sorted(unknown))} on a {cell.type} cell"
            )
        for key, value in patch.items():
            if not isinstance(value, str):
                raise ValidationError(f"{key} must be a string")

        changes = {key: value for key, value in patch.items() if getattr(cell, key) != value}
        if "filename" in changes:
            self._check_filename(changes["filename"], cell_id=cell.id)
        if cell.type == "code" and "source" in changes:
            changes["stale"] = True
        if cell.type == "markdown" and "text" in changes:
            changes["tokens"] = parse_markdown(changes["text"])

        updated = cell.model_copy(update=changes)
        self._cells[index] = updated
        return CellChange(kind="updated", cell=updated, index=index, changed=tuple(sorted(changes)))

    def record_execution(self, cell_id: str, **fields: Any) -> CellChange:
        """Set runtime fields (status, output, stale) on a code cell."""
        index = self.index_of(cell_id)
        cell = self._cells[index]
        if cell.type != "code":
            raise ValidationError(f"Cell {cell_id!r} is not a code cell")
        updated = cell.model_copy(update=fields)
        self._cells[index] = updated
        return CellChange(kind="updated", cell=updated, index=index, changed=tuple(sorted(fields)))

    def delete(self, cell_id: str) -> CellChange:
        index = self.index_of(cell_id)
        cell = self._cells.pop(index)
        return CellChange(kind="deleted", cell=cell, index=index)

    def move(self, cell_id: str, position: int) -> CellChange:
        """Move a cell to a new position, clamped to the valid range."""
        from_index = self.index_of(cell_id)
        cell = self._cells.pop(from_index)
        index = max(0, min(position, len(self._cells)))
        self._cells.insert(index, cell)
        return CellChange(kind="moved", cell=cell, index=index, from_index=from_index)
