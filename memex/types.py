"""
Data types for the local-first item store.
"""

import re
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional


class ContentKind(str, Enum):
    """Content types an entity can have."""
    BOOKMARK = "bookmark"
    YOUTUBE = "youtube"
    YOUTUBE_SHORT = "youtube_short"
    X = "x"
    GITHUB = "github"
    INSTAGRAM = "instagram"
    TIKTOK = "tiktok"
    REDDIT = "reddit"
    AMAZON = "amazon"
    LINKEDIN = "linkedin"
    IMAGE = "image"
    PDF = "pdf"
    VIDEO = "video"
    AUDIO = "audio"
    PODCAST = "podcast"
    NOTE = "note"
    ARTICLE = "article"
    PRODUCT = "product"
    BOOK = "book"
    COURSE = "course"

    @classmethod
    def coerce(cls, value: Any) -> "ContentKind":
        """Map unknown values to BOOKMARK, like the remote schema does."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            return cls.BOOKMARK


class ArtifactKind(str, Enum):
    """Kinds of AI-derived enrichment attached to an entity."""
    TAGS = "tags"
    SUMMARY = "summary"
    IMAGE_DESCRIPTION = "image_description"
    TRANSCRIPT = "transcript"


class SyncOpKind(str, Enum):
    UPSERT_ENTITY = "upsert-entity"
    UPSERT_ARTIFACT = "upsert-artifact"
    DELETE_ENTITY = "delete-entity"
    DELETE_ARTIFACT = "delete-artifact"
    UPSERT_SPACE = "upsert-space"
    DELETE_SPACE = "delete-space"
    UPSERT_MEMBERSHIP = "upsert-membership"
    DELETE_MEMBERSHIP = "delete-membership"

    @property
    def is_delete(self) -> bool:
        return self in (
            SyncOpKind.DELETE_ENTITY, SyncOpKind.DELETE_ARTIFACT,
            SyncOpKind.DELETE_SPACE, SyncOpKind.DELETE_MEMBERSHIP,
        )

    @property
    def is_artifact(self) -> bool:
        return self in (SyncOpKind.UPSERT_ARTIFACT, SyncOpKind.DELETE_ARTIFACT)


# Namespaces: one serialized collection each
ENTITIES = "entities"
SPACES = "spaces"
MEMBERSHIPS = "memberships"
FILTERS = "filters"
ARTIFACTS_PREFIX = "artifacts."

DEFAULT_SUB_KEY = "-"


def artifact_namespace(kind: "ArtifactKind | str") -> str:
    """Namespace holding all artifacts of one kind, e.g. ``artifacts.summary``."""
    return ARTIFACTS_PREFIX + ArtifactKind(kind).value


def artifact_namespaces() -> list[str]:
    return [artifact_namespace(k) for k in ArtifactKind]


def entity_key(id: str) -> tuple:
    """Observable store key for an entity."""
    return (ENTITIES, id)


def artifact_key(entity_id: str, kind: "ArtifactKind | str", sub_key: str = DEFAULT_SUB_KEY) -> tuple:
    """Observable store key for an artifact."""
    return (artifact_namespace(kind), entity_id, sub_key)


def space_key(id: str) -> tuple:
    return (SPACES, id)


def membership_key(entity_id: str, space_id: str) -> tuple:
    return (MEMBERSHIPS, entity_id, space_id)


TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> str:
    """Current UTC timestamp with microseconds: YYYY-MM-DDTHH:MM:SS.ffffffZ.

    Fixed width, so string order is time order.
    """
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)


def next_timestamp(previous: Optional[str]) -> str:
    """A fresh timestamp strictly greater than ``previous``.

    Wall clocks can stall or step back; updated_at must still grow so
    last-writer-wins comparisons stay meaningful.
    """
    now = utc_now()
    if previous and now <= previous:
        dt = parse_utc_timestamp(previous)
        now = (dt + timedelta(microseconds=1)).strftime(TIMESTAMP_FORMAT)
    return now


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp to a timezone-aware UTC datetime.

    Accepts the canonical format as well as '+00:00' suffixes and naive values.
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


MAX_ID_LENGTH = 1024
MAX_TAG_LENGTH = 128

# Control chars and a small blocklist of characters that cause trouble in
# URLs, shells and SQL: backslash, backtick, angle brackets, pipe, quotes
_ID_BLOCKED_RE = re.compile(r'[\x00-\x1f\x7f\\`<>|;"\']')


def validate_id(id: str) -> None:
    """Validate an entity ID: length and no dangerous characters."""
    if not id or len(id) > MAX_ID_LENGTH:
        raise ValueError(f"ID must be 1-{MAX_ID_LENGTH} characters")
    if _ID_BLOCKED_RE.search(id):
        raise ValueError(f"ID contains invalid characters: {id!r}")


def normalize_tags(tags) -> frozenset[str]:
    """Strip, drop empties, reject overlong tags."""
    if not tags:
        return frozenset()
    if isinstance(tags, str):
        tags = [tags]
    result = set()
    for tag in tags:
        tag = str(tag).strip()
        if not tag:
            continue
        if len(tag) > MAX_TAG_LENGTH:
            raise ValueError(f"Tag must be at most {MAX_TAG_LENGTH} characters: {tag[:20]!r}...")
        result.add(tag)
    return frozenset(result)


MAX_SPACE_NAME_LENGTH = 100
DEFAULT_SPACE_COLOR = "#007AFF"


def validate_space_name(name: Any) -> str:
    """Strip a space name and check it is usable."""
    name = str(name or "").strip()
    if not name:
        raise ValueError("Space name must not be empty")
    if len(name) > MAX_SPACE_NAME_LENGTH:
        raise ValueError(f"Space name must be at most {MAX_SPACE_NAME_LENGTH} characters")
    return name


@dataclass(frozen=True)
class Entity:
    """
    A saved content item.

    Instances are immutable; every change produces a new Entity via
    ``with_changes`` so subscribers never see a half-applied edit.
    ``deleted`` marks a tombstone kept until the remote delete is acknowledged.
    """
    id: str
    kind: ContentKind = ContentKind.BOOKMARK
    title: str = ""
    description: str = ""
    url: Optional[str] = None
    content: str = ""
    notes: str = ""
    summary: str = ""
    thumbnail_url: Optional[str] = None
    tags: frozenset[str] = field(default_factory=frozenset)
    is_archived: bool = False
    created_at: str = ""
    updated_at: str = ""
    deleted: bool = False

    # Fields a patch may touch; identity and bookkeeping are managed here
    EDITABLE = frozenset({
        "kind", "title", "description", "url", "content", "notes",
        "summary", "thumbnail_url", "tags", "is_archived",
    })

    def with_changes(self, patch: dict[str, Any], *, updated_at: Optional[str] = None) -> "Entity":
        """Return a copy with ``patch`` applied and a bumped updated_at."""
        unknown = set(patch) - self.EDITABLE
        if unknown:
            raise ValueError(f"Cannot patch fields: {', '.join(sorted(unknown))}")
        changes = dict(patch)
        if "tags" in changes:
            changes["tags"] = normalize_tags(changes["tags"])
        if "kind" in changes:
            changes["kind"] = ContentKind.coerce(changes["kind"])
        changes["updated_at"] = updated_at or next_timestamp(self.updated_at)
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "title": self.title,
            "description": self.description,
            "url": self.url,
            "content": self.content,
            "notes": self.notes,
            "summary": self.summary,
            "thumbnail_url": self.thumbnail_url,
            "tags": sorted(self.tags),
            "is_archived": self.is_archived,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "deleted": self.deleted,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Entity":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["kind"] = ContentKind.coerce(values.get("kind", "bookmark"))
        values["tags"] = normalize_tags(values.get("tags"))
        for key in ("title", "description", "content", "notes", "summary"):
            if values.get(key) is None:
                values[key] = ""
        return cls(**values)


@dataclass(frozen=True)
class Artifact:
    """An enrichment result for one (entity, kind, sub_key)."""
    entity_id: str
    kind: ArtifactKind
    sub_key: str
    value: str
    produced_by: str = "unknown"
    fetched_at: str = ""
    updated_at: str = ""

    @property
    def id(self) -> str:
        """Remote identifier: entity and sub-key joined."""
        return f"{self.entity_id}:{self.sub_key}"

    @property
    def namespace(self) -> str:
        return artifact_namespace(self.kind)

    @property
    def key(self) -> tuple:
        return artifact_key(self.entity_id, self.kind, self.sub_key)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "kind": self.kind.value,
            "sub_key": self.sub_key,
            "value": self.value,
            "produced_by": self.produced_by,
            "fetched_at": self.fetched_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Artifact":
        return cls(
            entity_id=data["entity_id"],
            kind=ArtifactKind(data["kind"]),
            sub_key=data.get("sub_key") or DEFAULT_SUB_KEY,
            value=data.get("value", ""),
            produced_by=data.get("produced_by") or "unknown",
            fetched_at=data.get("fetched_at", ""),
            updated_at=data.get("updated_at", ""),
        )


@dataclass(frozen=True)
class Space:
    """
    A named collection that entities can be filed into.

    Like an Entity, a deleted space stays as a tombstone until the
    remote acknowledges the delete.
    """
    id: str
    name: str
    description: str = ""
    color: str = DEFAULT_SPACE_COLOR
    icon: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    deleted: bool = False

    EDITABLE = frozenset({"name", "description", "color", "icon"})

    @property
    def key(self) -> tuple:
        return space_key(self.id)

    def with_changes(self, patch: dict[str, Any], *, updated_at: Optional[str] = None) -> "Space":
        unknown = set(patch) - self.EDITABLE
        if unknown:
            raise ValueError(f"Cannot patch fields: {', '.join(sorted(unknown))}")
        changes = dict(patch)
        if "name" in changes:
            changes["name"] = validate_space_name(changes["name"])
        changes["updated_at"] = updated_at or next_timestamp(self.updated_at)
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "icon": self.icon,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "deleted": self.deleted,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Space":
        # Older records carry the description as "desc"
        description = data.get("description") or data.get("desc") or ""
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            description=description,
            color=data.get("color") or DEFAULT_SPACE_COLOR,
            icon=data.get("icon"),
            created_at=data.get("created_at") or "",
            updated_at=data.get("updated_at") or "",
            deleted=bool(data.get("deleted", False)),
        )


@dataclass(frozen=True)
class Membership:
    """An entity filed in a space."""
    entity_id: str
    space_id: str
    created_at: str = ""
    updated_at: str = ""

    @property
    def id(self) -> str:
        """Remote identifier: entity and space joined."""
        return f"{self.entity_id}:{self.space_id}"

    @property
    def key(self) -> tuple:
        return membership_key(self.entity_id, self.space_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "space_id": self.space_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Membership":
        created_at = data.get("created_at") or ""
        return cls(
            entity_id=data["entity_id"],
            space_id=data["space_id"],
            created_at=created_at,
            updated_at=data.get("updated_at") or created_at,
        )


@dataclass
class SyncOp:
    """A queued remote operation awaiting acknowledgment."""
    op_id: str
    kind: SyncOpKind
    namespace: str
    target_id: str
    entity_id: str
    payload: dict = field(default_factory=dict)
    # Set for space and membership ops; space ops have no entity_id
    space_id: Optional[str] = None
    enqueued_at: str = ""
    attempts: int = 0
    last_error: Optional[str] = None
    status: str = "pending"

    @property
    def target(self) -> str:
        """Coalescing key: at most one queued op per target."""
        return f"{self.namespace}/{self.target_id}"

    @classmethod
    def upsert_entity(cls, entity: Entity) -> "SyncOp":
        return cls(
            op_id=_new_op_id(), kind=SyncOpKind.UPSERT_ENTITY,
            namespace=ENTITIES, target_id=entity.id, entity_id=entity.id,
            payload=entity.to_dict(),
        )

    @classmethod
    def delete_entity(cls, id: str) -> "SyncOp":
        return cls(
            op_id=_new_op_id(), kind=SyncOpKind.DELETE_ENTITY,
            namespace=ENTITIES, target_id=id, entity_id=id,
        )

    @classmethod
    def upsert_artifact(cls, artifact: Artifact) -> "SyncOp":
        return cls(
            op_id=_new_op_id(), kind=SyncOpKind.UPSERT_ARTIFACT,
            namespace=artifact.namespace, target_id=artifact.id,
            entity_id=artifact.entity_id, payload=artifact.to_dict(),
        )

    @classmethod
    def delete_artifact(cls, artifact: Artifact) -> "SyncOp":
        return cls(
            op_id=_new_op_id(), kind=SyncOpKind.DELETE_ARTIFACT,
            namespace=artifact.namespace, target_id=artifact.id,
            entity_id=artifact.entity_id,
        )

    @classmethod
    def upsert_space(cls, space: Space) -> "SyncOp":
        return cls(
            op_id=_new_op_id(), kind=SyncOpKind.UPSERT_SPACE,
            namespace=SPACES, target_id=space.id, entity_id="",
            space_id=space.id, payload=space.to_dict(),
        )

    @classmethod
    def delete_space(cls, id: str) -> "SyncOp":
        return cls(
            op_id=_new_op_id(), kind=SyncOpKind.DELETE_SPACE,
            namespace=SPACES, target_id=id, entity_id="", space_id=id,
        )

    @classmethod
    def upsert_membership(cls, membership: Membership) -> "SyncOp":
        return cls(
            op_id=_new_op_id(), kind=SyncOpKind.UPSERT_MEMBERSHIP,
            namespace=MEMBERSHIPS, target_id=membership.id,
            entity_id=membership.entity_id, space_id=membership.space_id,
            payload=membership.to_dict(),
        )

    @classmethod
    def delete_membership(cls, membership: Membership) -> "SyncOp":
        return cls(
            op_id=_new_op_id(), kind=SyncOpKind.DELETE_MEMBERSHIP,
            namespace=MEMBERSHIPS, target_id=membership.id,
            entity_id=membership.entity_id, space_id=membership.space_id,
        )


def _new_op_id() -> str:
    return uuid.uuid4().hex
