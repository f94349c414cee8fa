"""In-memory system of record for groups and instances.

Only orchestrator coroutines mutate the store, and they all run on one event
loop, so no locking is needed. Readers may still see a group mid-deployment.
"""

from typing import Dict, Iterator, List, Optional

from ..exceptions import ConfigurationError
from ..models import HANDLE_STATUSES, Group, Instance, InstanceStatus


class StateStore:
    """Global instance index plus per-group membership."""

    def __init__(self):
        self._groups: Dict[str, Group] = {}
        self._instances: Dict[str, Instance] = {}
        self._owners: Dict[str, str] = {}

    # Groups

    def add_group(self, group: Group) -> Group:
        if group.group_id in self._groups:
            raise ConfigurationError(f"Group {group.group_id} already exists")
        self._groups[group.group_id] = group
        return group

    def get_group(self, group_id: str) -> Optional[Group]:
        return self._groups.get(group_id)

    def remove_group(self, group_id: str) -> Optional[Group]:
        group = self._groups.pop(group_id, None)
        if group is not None:
            for name in list(group.instances):
                self.remove_instance(name)
        return group

    def groups(self) -> List[Group]:
        return list(self._groups.values())

    # Instances

    def add_instance(self, group_id: str, instance: Instance) -> Instance:
        """Add ``instance`` to a group. A name may belong to one group only."""
        group = self._groups.get(group_id)
        if group is None:
            raise ConfigurationError(f"Group {group_id} not found", instance_name=instance.name)
        owner = self._owners.get(instance.name)
        if owner is not None:
            raise ConfigurationError(
                f"Instance {instance.name} already belongs to group {owner}", instance_name=instance.name
            )
        self._instances[instance.name] = instance
        self._owners[instance.name] = group_id
        group.instances[instance.name] = instance
        return instance

    def get_instance(self, name: str) -> Optional[Instance]:
        return self._instances.get(name)

    def owner_of(self, name: str) -> Optional[str]:
        return self._owners.get(name)

    def group_of(self, name: str) -> Optional[Group]:
        owner = self._owners.get(name)
        return self._groups.get(owner) if owner else None

    def remove_instance(self, name: str) -> Optional[Instance]:
        instance = self._instances.pop(name, None)
        owner = self._owners.pop(name, None)
        if owner is not None and owner in self._groups:
            self._groups[owner].instances.pop(name, None)
        return instance

    def instances(self) -> Iterator[Instance]:
        return iter(list(self._instances.values()))

    def __len__(self) -> int:
        return len(self._instances)

    def __contains__(self, name: str) -> bool:
        return name in self._instances

    @staticmethod
    def set_status(
        instance: Instance,
        status: InstanceStatus,
        container_id: Optional[str] = None,
        error: Optional[str] = None,
    ):
        """Move ``instance`` to ``status`` keeping the handle invariant.

        The container handle is kept only while starting, running or stopping.
        """
        if status in HANDLE_STATUSES:
            handle = container_id or instance.container_id
            if not handle:
                raise ValueError(f"Status {status.value} requires a container handle")
            instance.container_id = handle
        else:
            instance.container_id = None

        instance.status = status
        if status == InstanceStatus.ERROR:
            instance.error_message = error
        elif status == InstanceStatus.PULLING:
            instance.error_message = None
