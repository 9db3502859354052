from __future__ import annotations

from typing import Any, Mapping, Sequence

from .contracts import Group

MANUAL_GROUP_PREFIX = "group-manual"


class UnknownGroupError(ValueError):
    pass


class InvalidPartitionError(ValueError):
    pass


def _copy_group(group: Group, **changes: Any) -> Group:
    fields = {
        "group_id": group.group_id,
        "name": group.name,
        "experiment_ids": list(group.experiment_ids),
        "signature": dict(group.signature),
        "warnings": list(group.warnings),
        "warning_factors": list(group.warning_factors),
        "created_from_recipe": group.created_from_recipe,
        "version": group.version,
    }
    fields.update(changes)
    return Group(**fields)


def _copy_groups(groups: Sequence[Group]) -> list[Group]:
    return [_copy_group(group) for group in groups]


def _unique_ids(values: Sequence[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


def next_group_id(groups: Sequence[Group], *, reserved: Sequence[str] = ()) -> str:
    used = {group.group_id for group in groups} | set(reserved)
    ordinal = 1
    while f"{MANUAL_GROUP_PREFIX}-{ordinal}" in used:
        ordinal += 1
    return f"{MANUAL_GROUP_PREFIX}-{ordinal}"


def find_partition_conflicts(groups: Sequence[Group]) -> list[str]:
    seen: set[str] = set()
    conflicts: list[str] = []
    for group in groups:
        for experiment_id in group.experiment_ids:
            if experiment_id in seen and experiment_id not in conflicts:
                conflicts.append(experiment_id)
            seen.add(experiment_id)
    return conflicts


class ManualGroupEditor:
    """Edits a partition of experiments into groups.

    Every operation returns a new list of new ``Group`` objects; inputs are never mutated and
    no experiment id ever ends up in two groups. References to unknown group ids are no-ops
    unless the editor is ``strict``, in which case ``UnknownGroupError`` is raised.
    """

    def __init__(self, *, strict: bool = False) -> None:
        self.strict = strict

    def _missing(self, groups: Sequence[Group], group_ids: Sequence[str]) -> list[Group]:
        if self.strict:
            raise UnknownGroupError(f"Unknown group id(s): {', '.join(group_ids)}")
        return _copy_groups(groups)

    def move_experiment(self, groups: Sequence[Group], experiment_id: str, target_group_id: str) -> list[Group]:
        if not any(group.group_id == target_group_id for group in groups):
            return self._missing(groups, [target_group_id])
        moved: list[Group] = []
        for group in groups:
            if group.group_id == target_group_id:
                members = _unique_ids(group.experiment_ids)
                if experiment_id not in members:
                    members.append(experiment_id)
            else:
                members = [member for member in group.experiment_ids if member != experiment_id]
            moved.append(_copy_group(group, experiment_ids=members))
        return moved

    def create_group(self, groups: Sequence[Group], name: str) -> list[Group]:
        created = _copy_groups(groups)
        created.append(Group(group_id=next_group_id(groups), name=name))
        return created

    def rename_group(self, groups: Sequence[Group], group_id: str, name: str) -> list[Group]:
        if not any(group.group_id == group_id for group in groups):
            return self._missing(groups, [group_id])
        return [
            _copy_group(group, name=name) if group.group_id == group_id else _copy_group(group)
            for group in groups
        ]

    def merge_groups(self, groups: Sequence[Group], group_ids: Sequence[str], name: str) -> list[Group]:
        by_id = {group.group_id: group for group in groups}
        requested = _unique_ids(list(group_ids))
        unknown = [group_id for group_id in requested if group_id not in by_id]
        selected = [group_id for group_id in requested if group_id in by_id]
        if not selected or (self.strict and unknown):
            return self._missing(groups, unknown or requested)

        members: list[str] = []
        for group_id in selected:
            members.extend(by_id[group_id].experiment_ids)
        merged = Group(
            group_id=next_group_id(groups),
            name=name,
            experiment_ids=_unique_ids(members),
        )
        remaining = [_copy_group(group) for group in groups if group.group_id not in selected]
        remaining.append(merged)
        return remaining

    def split_group(
        self,
        groups: Sequence[Group],
        group_id: str,
        partitions: Sequence[Sequence[str]],
    ) -> list[Group]:
        source = next((group for group in groups if group.group_id == group_id), None)
        if source is None:
            return self._missing(groups, [group_id])

        original = set(source.experiment_ids)
        claimed = {
            member for group in groups if group.group_id != group_id for member in group.experiment_ids
        }
        if self.strict:
            seen: set[str] = set()
            for partition in partitions:
                for member in partition:
                    if member not in original:
                        raise InvalidPartitionError(f"Experiment {member} is not a member of group {group_id}")
                    if member in seen:
                        raise InvalidPartitionError(f"Experiment {member} appears in more than one partition")
                    seen.add(member)

        remaining = [_copy_group(group) for group in groups if group.group_id != group_id]
        reserved: list[str] = []
        for index, partition in enumerate(partitions, start=1):
            members: list[str] = []
            for member in partition:
                if member in claimed:
                    continue
                claimed.add(member)
                members.append(member)
            new_id = next_group_id(groups, reserved=reserved)
            reserved.append(new_id)
            remaining.append(Group(group_id=new_id, name=f"{source.name} (split {index})", experiment_ids=members))
        return remaining


_default_editor = ManualGroupEditor()


def move_experiment(groups: Sequence[Group], experiment_id: str, target_group_id: str) -> list[Group]:
    return _default_editor.move_experiment(groups, experiment_id, target_group_id)


def create_group(groups: Sequence[Group], name: str) -> list[Group]:
    return _default_editor.create_group(groups, name)


def rename_group(groups: Sequence[Group], group_id: str, name: str) -> list[Group]:
    return _default_editor.rename_group(groups, group_id, name)


def merge_groups(groups: Sequence[Group], group_ids: Sequence[str], name: str) -> list[Group]:
    return _default_editor.merge_groups(groups, group_ids, name)


def split_group(groups: Sequence[Group], group_id: str, partitions: Sequence[Sequence[str]]) -> list[Group]:
    return _default_editor.split_group(groups, group_id, partitions)


def _action_text(action: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = action.get(key)
        if isinstance(value, str):
            return value
    raise ValueError(f"Group edit action requires {keys[0]}")


def _action_list(action: Mapping[str, Any], *keys: str) -> list[Any]:
    for key in keys:
        value = action.get(key)
        if isinstance(value, list):
            return value
    raise ValueError(f"Group edit action requires {keys[0]} as a list")


def apply_group_edit(groups: Sequence[Group], action: Mapping[str, Any], *, strict: bool = False) -> list[Group]:
    editor = ManualGroupEditor(strict=strict)
    action_type = action.get("type")
    if action_type == "move":
        return editor.move_experiment(
            groups,
            _action_text(action, "experimentId", "experiment_id"),
            _action_text(action, "targetGroupId", "target_group_id"),
        )
    if action_type == "create":
        return editor.create_group(groups, _action_text(action, "name"))
    if action_type == "rename":
        return editor.rename_group(groups, _action_text(action, "groupId", "group_id"), _action_text(action, "name"))
    if action_type == "merge":
        group_ids = [str(item) for item in _action_list(action, "groupIds", "group_ids")]
        return editor.merge_groups(groups, group_ids, _action_text(action, "name"))
    if action_type == "split":
        partitions = [
            [str(member) for member in partition]
            for partition in _action_list(action, "partitions")
            if isinstance(partition, list)
        ]
        return editor.split_group(groups, _action_text(action, "groupId", "group_id"), partitions)
    raise ValueError(f"Unsupported group edit action: {action_type!r}")


__all__ = [
    "InvalidPartitionError",
    "MANUAL_GROUP_PREFIX",
    "ManualGroupEditor",
    "UnknownGroupError",
    "apply_group_edit",
    "create_group",
    "find_partition_conflicts",
    "merge_groups",
    "move_experiment",
    "next_group_id",
    "rename_group",
    "split_group",
]
