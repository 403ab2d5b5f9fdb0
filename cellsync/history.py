"""
History log and diff application.

AI collaborators describe their changes as file diffs (create/edit/delete
against a cell's filename) and command records (dependency installs). The
DiffApplier folds them into a CellStore atomically and records every
committed batch in the session's append-only HistoryLog.
"""

import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Annotated, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from cellsync.cells import CellChange, CellStore, CodeCell, PackageManifestCell
from cellsync.errors import (
    CellNotFound,
    NotFound,
    PathConflict,
    StaleBase,
    ValidationError,
)
from cellsync.utils import (
    MANIFEST_FILENAME,
    diff_stats,
    get_timestamp,
    randomid,
    requirement_name,
    valid_filename,
)

logger = logging.getLogger(__name__)


class FileDiff(BaseModel):
    """One file-level change produced by an AI collaborator."""
    model_config = ConfigDict(frozen=True)

    path: str
    original: Optional[str] = None
    modified: str = ""
    type: Literal["create", "edit", "delete"]
    additions: Optional[int] = Field(default=None, ge=0)
    deletions: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_shape(self) -> "FileDiff":
        if self.type == "create" and self.original is not None:
            raise ValueError("create diffs must not carry an original")
        if self.type == "edit" and self.original is None:
            raise ValueError("edit diffs require the original source")
        if self.additions is None or self.deletions is None:
            additions, deletions = diff_stats(self.original or "", self.modified)
            object.__setattr__(self, "additions", additions if self.additions is None else self.additions)
            object.__setattr__(self, "deletions", deletions if self.deletions is None else self.deletions)
        return self

    @property
    def filename(self) -> str:
        return PurePosixPath(self.path).name


class _Entry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=randomid)
    plan_id: Optional[str] = None
    created_at: str = Field(default_factory=get_timestamp)


class UserMessageEntry(_Entry):
    type: Literal["user"] = "user"
    message: str


class PlanEntry(_Entry):
    type: Literal["plan"] = "plan"
    content: str


class CommandEntry(_Entry):
    type: Literal["command"] = "command"
    command: str
    packages: tuple[str, ...] = ()
    description: str = ""


class DiffEntry(_Entry):
    type: Literal["diff"] = "diff"
    files: tuple[FileDiff, ...]
    reverts: Optional[str] = None
    # Index each deleted file held before it was removed.
    positions: dict[str, int] = Field(default_factory=dict)


HistoryEntry = Annotated[
    Union[UserMessageEntry, PlanEntry, CommandEntry, DiffEntry],
    Field(discriminator="type"),
]

_entry_adapter = TypeAdapter(HistoryEntry)
_files_adapter = TypeAdapter(list[FileDiff])


def entry_from_dict(data: dict) -> HistoryEntry:
    return _entry_adapter.validate_python(data)


def parse_file_diffs(data) -> list[FileDiff]:
    """Validate a diff batch in the wire format. Raises ValidationError."""
    try:
        return _files_adapter.validate_python(data)
    except ValueError as e:
        raise ValidationError(f"Malformed diff: {e}") from e


class HistoryLog:
    """Append-only, ordered history of one session."""

    def __init__(self, entries: Iterable[HistoryEntry] = ()):
        self._entries: list[HistoryEntry] = list(entries)

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        self._entries.append(entry)
        return entry

    def entries(self) -> tuple[HistoryEntry, ...]:
        return tuple(self._entries)

    def get(self, entry_id: str) -> HistoryEntry:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        raise NotFound(f"History entry {entry_id!r} not found")

    def to_list(self) -> list[dict]:
        return [entry.model_dump(mode="json") for entry in self._entries]


@dataclass
class AppliedResult:
    """Outcome of one committed diff batch."""
    entry: DiffEntry
    changes: list[CellChange] = field(default_factory=list)

    def to_payload(self) -> dict:
        return {
            "entry": self.entry.model_dump(mode="json"),
            "changes": [
                {"kind": change.kind, **change.to_payload()} for change in self.changes
            ],
        }


def merge_requirements(source: str, packages: Iterable[str]) -> str:
    """Add packages to a requirements.txt body, skipping ones already listed."""
    lines = [line for line in source.splitlines() if line.strip()]
    present = {
        requirement_name(line) for line in lines if not line.lstrip().startswith("#")
    }
    for package in packages:
        name = requirement_name(package)
        if name and name not in present:
            lines.append(package.strip())
            present.add(name)
    return "\n".join(lines) + "\n" if lines else ""


class DiffApplier:
    """
    Applies diff batches and command records to a session's cells.

    A batch is validated as a whole first, then applied entry by entry. The
    first failing entry rolls the store back to the state it had before the
    call, so a batch is either fully committed or not at all.
    """

    def __init__(self, store: CellStore, history: HistoryLog):
        self.store = store
        self.history = history

    def _validate(self, files: list[FileDiff]) -> None:
        seen = set()
        for diff in files:
            path = PurePosixPath(diff.path)
            if path.parent not in (PurePosixPath("."), PurePosixPath("")):
                raise ValidationError(f"Malformed diff: {diff.path!r} is not a notebook file")
            name = path.name
            if name != MANIFEST_FILENAME and not valid_filename(name):
                raise ValidationError(f"Malformed diff: {diff.path!r} is not a valid cell filename")
            if name in seen:
                raise ValidationError(f"Malformed diff: {diff.path!r} appears more than once")
            seen.add(name)

    def _apply_one(self, diff: FileDiff, position: Optional[int] = None) -> CellChange:
        name = diff.filename
        current = self.store.find_by_filename(name)

        if diff.type == "create":
            if current is not None:
                raise PathConflict(f"{diff.path!r} already exists")
            if name == MANIFEST_FILENAME:
                cell = PackageManifestCell(source=diff.modified)
            else:
                cell = CodeCell(filename=name, source=diff.modified)
            return self.store.insert(len(self.store) if position is None else position, cell)

        if current is None:
            raise CellNotFound(diff.path)

        if diff.type == "edit":
            if current.source != diff.original:
                raise StaleBase(diff.path)
            return self.store.update(current.id, {"source": diff.modified})

        # delete
        if diff.original is not None and current.source != diff.original:
            raise StaleBase(diff.path)
        return self.store.delete(current.id)

    def apply(
        self,
        files: list[FileDiff],
        plan_id: Optional[str] = None,
        reverts: Optional[str] = None,
    ) -> AppliedResult:
        """
        Apply a diff batch atomically.

        Raises:
            ValidationError: malformed batch, nothing applied
            PathConflict: create on an existing file
            StaleBase: edit whose original no longer matches
            CellNotFound: edit or delete of a missing file
        """
        return self._commit(files, plan_id=plan_id, reverts=reverts)

    def _commit(
        self,
        files: list[FileDiff],
        plan_id: Optional[str] = None,
        reverts: Optional[str] = None,
        positions: Optional[dict[str, int]] = None,
    ) -> AppliedResult:
        if not files:
            raise ValidationError("Malformed diff: no files")
        self._validate(files)
        positions = positions or {}

        snapshot = self.store.snapshot()
        changes = []
        recorded = []
        removed_at = {}
        try:
            for diff in files:
                if diff.type == "delete":
                    # The stored entry keeps the removed source so the delete can be reverted.
                    current = self.store.find_by_filename(diff.filename)
                    if current is not None and diff.original is None:
                        diff = FileDiff(path=diff.path, original=current.source, type="delete")
                change = self._apply_one(diff, positions.get(diff.filename))
                if diff.type == "delete":
                    removed_at[diff.filename] = change.index
                changes.append(change)
                recorded.append(diff)
        except Exception:
            self.store.restore(snapshot)
            raise

        entry = self.history.append(DiffEntry(
            files=tuple(recorded),
            plan_id=plan_id,
            reverts=reverts,
            positions=removed_at,
        ))
        logger.info("Applied diff %s (%d files)", entry.id, len(files))
        return AppliedResult(entry=entry, changes=changes)

    def revert(self, entry_id: str) -> AppliedResult:
        """Undo a previously applied diff by applying its inverse."""
        entry = self.history.get(entry_id)
        if entry.type != "diff":
            raise ValidationError(f"History entry {entry_id!r} is not a diff")

        inverse = []
        for diff in reversed(entry.files):
            if diff.type == "create":
                inverse.append(FileDiff(path=diff.path, original=diff.modified, type="delete"))
            elif diff.type == "edit":
                inverse.append(FileDiff(
                    path=diff.path,
                    original=diff.modified,
                    modified=diff.original,
                    type="edit",
                ))
            else:
                inverse.append(FileDiff(path=diff.path, modified=diff.original or "", type="create"))
        return self._commit(inverse, plan_id=entry.plan_id, reverts=entry.id, positions=entry.positions)

    def apply_command(
        self,
        packages: list[str],
        description: str = "",
        plan_id: Optional[str] = None,
    ) -> tuple[CommandEntry, CellChange]:
        """
        Record a dependency install and add the packages to requirements.txt.

        The manifest cell is created when the session has none.
        """
        packages = [p.strip() for p in packages if p and p.strip()]
        if not packages:
            raise ValidationError("No packages given")

        entry = CommandEntry(
            command="pip install " + " ".join(packages),
            packages=tuple(packages),
            description=description,
            plan_id=plan_id,
        )
        manifest = self.store.manifest()
        if manifest is None:
            change = self.store.insert(
                len(self.store),
                PackageManifestCell(source=merge_requirements("", packages)),
            )
        else:
            change = self.store.update(
                manifest.id,
                {"source": merge_requirements(manifest.source, packages)},
            )
        self.history.append(entry)
        return entry, change
