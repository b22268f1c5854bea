from collections import OrderedDict
from typing import Iterable, List, Union

from .channel import ChannelGroup, MetricChannel

Pollable = Union[MetricChannel, ChannelGroup]


class MetricRegistry:
    """Registry of channels and channel groups addressable by id.

    A channel that belongs to a group is polled only through its group and
    cannot be subscribed to on its own.
    """

    def __init__(self) -> None:
        self._targets: "OrderedDict[str, Pollable]" = OrderedDict()
        self._channels: "OrderedDict[str, MetricChannel]" = OrderedDict()

    def register(self, target: Pollable) -> None:
        members = target.channels if isinstance(target, ChannelGroup) else [target]
        ids = [target.id] + [channel.id for channel in members if channel is not target]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Group '{target.id}' reuses a metric id.")
        for item_id in ids:
            if item_id in self._targets or item_id in self._channels:
                raise ValueError(f"Metric '{item_id}' is already registered.")
        self._targets[target.id] = target
        for channel in members:
            self._channels[channel.id] = channel

    def all(self) -> Iterable[Pollable]:
        return self._targets.values()

    def channels(self) -> List[MetricChannel]:
        return list(self._channels.values())

    def get(self, target_id: str) -> Pollable:
        if target_id not in self._targets:
            if target_id in self._channels:
                group_id = self._channels[target_id].group_id
                raise KeyError(
                    f"Metric '{target_id}' is polled through group '{group_id}'."
                )
            raise KeyError(f"Metric '{target_id}' is not registered.")
        return self._targets[target_id]

    def get_channel(self, channel_id: str) -> MetricChannel:
        if channel_id not in self._channels:
            raise KeyError(f"Metric '{channel_id}' is not registered.")
        return self._channels[channel_id]

    def __contains__(self, target_id: object) -> bool:
        return target_id in self._targets
