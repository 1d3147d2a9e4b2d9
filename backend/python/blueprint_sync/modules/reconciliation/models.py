from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class FetchErrorType(str, Enum):
    """Why a page fetch failed. Only PAGE_DELETED allows treating content as gone."""

    PAGE_DELETED = "page_deleted"
    PAGE_NOT_FOUND = "page_not_found"
    PERMISSION_DENIED = "permission_denied"
    UNAUTHORIZED = "unauthorized"
    TRANSIENT_FAILURE = "transient_failure"
    CLIENT_ERROR = "client_error"


@dataclass
class FetchResult:
    success: bool
    page_data: Optional[Dict[str, Any]] = None
    document: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_type: Optional[FetchErrorType] = None
    http_status: Optional[int] = None

    @property
    def title(self) -> Optional[str]:
        return (self.page_data or {}).get("title")


def is_deletion_confirmed(result: FetchResult) -> bool:
    """True only when the fetch proved the page is gone."""
    return not result.success and result.error_type == FetchErrorType.PAGE_DELETED


@dataclass
class CollectedReferences:
    all: List[Dict[str, Any]] = field(default_factory=list)
    unique: List[Dict[str, Any]] = field(default_factory=list)
    orphaned_index_entries: List[Dict[str, Any]] = field(default_factory=list)
    malformed_index_entries: List[Dict[str, Any]] = field(default_factory=list)
    truncated: bool = False


@dataclass
class RepairResult:
    repaired: bool
    source_id: Optional[str] = None
    source: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


@dataclass
class VersionResult:
    success: bool
    version_id: Optional[str] = None
    error: Optional[str] = None


class Phase(str, Enum):
    QUEUED = "queued"
    INITIALIZING = "initializing"
    BACKUP = "backup"
    FETCHING = "fetching"
    COLLECTING = "collecting"
    PROCESSING = "processing"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    ERROR = "error"


PHASE_ORDER = [
    Phase.QUEUED,
    Phase.INITIALIZING,
    Phase.BACKUP,
    Phase.FETCHING,
    Phase.COLLECTING,
    Phase.PROCESSING,
    Phase.FINALIZING,
    Phase.COMPLETE,
]


@dataclass
class ReconciliationResults:
    """Classification buckets accumulated by one check-embeds run."""

    dry_run: bool = True
    active: List[Dict[str, Any]] = field(default_factory=list)
    stale: List[Dict[str, Any]] = field(default_factory=list)
    orphaned: List[Dict[str, Any]] = field(default_factory=list)
    broken: List[Dict[str, Any]] = field(default_factory=list)
    repaired: List[Dict[str, Any]] = field(default_factory=list)
    unverified: List[Dict[str, Any]] = field(default_factory=list)
    orphaned_index_entries: List[Dict[str, Any]] = field(default_factory=list)
    malformed_index_entries: List[Dict[str, Any]] = field(default_factory=list)
    orphaned_entries_removed: List[str] = field(default_factory=list)
    total_checked: int = 0
    pages_checked: int = 0
    backup_id: Optional[str] = None
    index_truncated: bool = False

    def summary(self) -> Dict[str, Any]:
        return {
            "totalChecked": self.total_checked,
            "activeCount": len(self.active),
            "staleCount": len(self.stale),
            "orphanedCount": len(self.orphaned),
            "brokenReferenceCount": len(self.broken),
            "repairedReferenceCount": len(self.repaired),
            "unverifiedCount": len(self.unverified),
            "orphanedIndexEntryCount": len(self.orphaned_index_entries),
            "malformedIndexEntryCount": len(self.malformed_index_entries),
            "orphanedEntriesRemoved": len(self.orphaned_entries_removed),
            "pagesChecked": self.pages_checked,
            "indexTruncated": self.index_truncated,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            "summary": self.summary(),
            "dryRun": self.dry_run,
            "backupId": self.backup_id,
            "activeIncludes": data["active"],
            "staleIncludes": data["stale"],
            "orphanedIncludes": data["orphaned"],
            "brokenReferences": data["broken"],
            "repairedReferences": data["repaired"],
            "unverifiedIncludes": data["unverified"],
            "orphanedIndexEntries": data["orphaned_index_entries"],
            "malformedIndexEntries": data["malformed_index_entries"],
            "orphanedEntriesRemoved": data["orphaned_entries_removed"],
        }


@dataclass
class SourceCheckResults:
    """Outcome of one check-sources run. Nothing here is ever quarantined."""

    active: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    unverified: List[Dict[str, Any]] = field(default_factory=list)
    missing_from_page: List[Dict[str, Any]] = field(default_factory=list)
    total_checked: int = 0
    pages_checked: int = 0
    index: Dict[str, Any] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        return {
            "totalChecked": self.total_checked,
            "activeCount": len(self.active),
            "skippedCount": len(self.skipped),
            "unverifiedCount": len(self.unverified),
            "missingFromPageCount": len(self.missing_from_page),
            "pagesChecked": self.pages_checked,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            # The index rebuild fields stay at the top level
            **self.index,
            "summary": self.summary(),
            "activeSources": data["active"],
            "skippedSources": data["skipped"],
            "unverifiedSources": data["unverified"],
            "missingFromPage": data["missing_from_page"],
        }


def source_id_of(record: Optional[Dict[str, Any]]) -> Optional[str]:
    """Source id of a reference or Embed configuration, accepting the legacy ``excerptId`` field."""
    if not record:
        return None
    value = record.get("sourceId") or record.get("excerptId")
    return value if isinstance(value, str) and value.strip() else None
