"""Conflict resolution for concurrently edited drafts.

When a conditional write finds that the remote draft moved on, the engine
hands both copies to a ConflictResolver. The default FieldMergeResolver
merges field by field with fixed authority rules, so the same pair of
inputs always yields the same output regardless of which writer runs the
merge.
"""

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import ValidationError
from .models import ConflictMarker, Draft

WORKFLOW_STEPS = ("upload", "timepoints", "blocks", "summary", "ready-to-publish")


class ConflictResolver(ABC):
    """Abstract interface for merging two divergent copies of a draft."""

    @abstractmethod
    def merge(self, local: Draft, remote: Draft) -> Draft:
        """Merge ``local`` (this writer's copy) with ``remote`` (stored copy).

        Args:
            local: Draft the caller tried to write
            remote: Draft currently held by the remote store

        Returns:
            Merged draft with ``version = max(local.version, remote.version) + 1``
            and a conflict marker set
        """


@dataclass(frozen=True)
class MergePolicy:
    """Which content fields fall under which authority rule.

    Paths are dotted keys into ``Draft.content``.
    """

    transient_fields: Tuple[str, ...] = ("ui",)
    monotonic_fields: Tuple[str, ...] = ("progress",)
    append_only_fields: Tuple[str, ...] = ("ui.celebrations_shown",)
    ordered_fields: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
        ("current_step", WORKFLOW_STEPS),
    )
    step_blocks_field: str = "step_data"
    block_timestamp_key: str = "last_modified_at"


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _get_path(data: Dict[str, Any], path: str) -> Tuple[bool, Any]:
    node: Any = data
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return False, None
        node = node[part]
    return True, node


def _set_path(data: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    node = data
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def _rank(value: Any, order: Tuple[str, ...]) -> int:
    """Position of ``value`` in ``order``; -1 when absent or unknown."""
    try:
        return order.index(value)
    except ValueError:
        return -1


def _ordered_union(remote_items: List[Any], local_items: List[Any]) -> List[Any]:
    result: List[Any] = []
    for item in list(remote_items) + list(local_items):
        if item not in result:
            result.append(item)
    return result


@dataclass
class FieldMergeResolver(ConflictResolver):
    """Deterministic field-level merge.

    Authority rules, highest priority first:

    1. Transient view state (``ui``): local wins, it reflects the user's screen.
    2. Monotonic progress (``progress``): the larger value wins. The workflow
       stage (``current_step``) takes whichever side is further along.
    3. Append-only collections (``ui.celebrations_shown``): union of both sides.
    4. Step payload blocks (``step_data.<step>``): later ``last_modified_at``
       wins, ties go to remote. Only applies when both sides hold a mapping.
    5. Everything else: remote wins. Keys only one side has are kept.
    """

    policy: MergePolicy = field(default_factory=MergePolicy)

    def merge(self, local: Draft, remote: Draft) -> Draft:
        if local.document_id != remote.document_id:
            raise ValidationError(
                f"Cannot merge different documents: "
                f"{local.document_id} vs {remote.document_id}"
            )

        local_content = copy.deepcopy(local.content)
        remote_content = copy.deepcopy(remote.content)

        # Rule 5: remote is the default authority
        merged: Dict[str, Any] = {**local_content, **remote_content}

        # Rule 4: step blocks. Non-mapping payloads stay under rule 5.
        blocks_field = self.policy.step_blocks_field
        local_blocks = local_content.get(blocks_field)
        remote_blocks = remote_content.get(blocks_field)
        if isinstance(local_blocks, dict) and isinstance(remote_blocks, dict):
            merged[blocks_field] = self._merge_blocks(
                local_blocks,
                remote_blocks,
                local.last_modified_at,
                remote.last_modified_at,
            )

        # Rule 2: monotonic numbers
        for name in self.policy.monotonic_fields:
            values = [
                content[name]
                for content in (local_content, remote_content)
                if isinstance(content.get(name), (int, float))
                and not isinstance(content.get(name), bool)
            ]
            if values:
                merged[name] = max(values)

        # Rule 2: ordered stages never move backwards
        for name, order in self.policy.ordered_fields:
            local_rank = _rank(local_content.get(name), order)
            remote_rank = _rank(remote_content.get(name), order)
            if local_rank > remote_rank:
                merged[name] = local_content[name]

        # Rule 1: transient view state
        for name in self.policy.transient_fields:
            if name in local_content:
                merged[name] = copy.deepcopy(local_content[name])

        # Rule 3: append-only collections, carved out of transient fields
        for path in self.policy.append_only_fields:
            has_local, local_items = _get_path(local_content, path)
            has_remote, remote_items = _get_path(remote_content, path)
            if not (has_local or has_remote):
                continue
            _set_path(
                merged,
                path,
                _ordered_union(
                    remote_items if isinstance(remote_items, list) else [],
                    local_items if isinstance(local_items, list) else [],
                ),
            )

        last_modified = max(local.last_modified_at, remote.last_modified_at)
        return Draft(
            document_id=remote.document_id,
            owner_id=remote.owner_id,
            version=max(local.version, remote.version) + 1,
            last_modified_at=last_modified,
            content=merged,
            conflict_marker=ConflictMarker(
                merged_at=last_modified,
                local_version=local.version,
                remote_version=remote.version,
            ),
        )

    def _merge_blocks(
        self,
        local_blocks: Dict[str, Any],
        remote_blocks: Dict[str, Any],
        local_default: datetime,
        remote_default: datetime,
    ) -> Dict[str, Any]:
        merged: Dict[str, Any] = {}
        for step in list(remote_blocks) + [s for s in local_blocks if s not in remote_blocks]:
            if step not in local_blocks:
                merged[step] = remote_blocks[step]
                continue
            if step not in remote_blocks:
                merged[step] = local_blocks[step]
                continue

            local_ts = self._block_timestamp(local_blocks[step]) or local_default
            remote_ts = self._block_timestamp(remote_blocks[step]) or remote_default
            merged[step] = local_blocks[step] if local_ts > remote_ts else remote_blocks[step]
        return merged

    def _block_timestamp(self, block: Any) -> Optional[datetime]:
        if not isinstance(block, dict):
            return None
        return _parse_timestamp(block.get(self.policy.block_timestamp_key))
