# =============================================================================
# Service Center Client -- Service Diff
# =============================================================================
#
# Turns two full node sets into fine-grained node events plus at most
# one coarse service event. Order within a diff is fixed:
#
#   NODE_REMOVED* -> NODE_UPDATED* -> NODE_ADDED* -> SERVICE_*
#
# Each group is sorted by (ip, port) so the output never depends on the
# order the server listed the nodes in.
# =============================================================================

from __future__ import annotations

from typing import Iterable

from .types import NodeInfo, ServiceChangeEvent, ServiceEventType, ServiceInfo


def _by_identity(nodes: Iterable[NodeInfo]) -> dict[tuple[str, int], NodeInfo]:
    # Last one wins on duplicate identities
    return {node.identity: node for node in nodes}


def _ordered(nodes: dict[tuple[str, int], NodeInfo]) -> tuple[NodeInfo, ...]:
    return tuple(nodes[identity] for identity in sorted(nodes))


def diff_service(
    service: ServiceInfo,
    previous: Iterable[NodeInfo],
    current: Iterable[NodeInfo],
) -> list[ServiceChangeEvent]:
    """Events that take a subscriber from *previous* to *current*.

    ``all_nodes`` on each event is the node list once that event is
    applied. For ``NODE_REMOVED`` and ``SERVICE_DELETED`` it is the list
    just before the removal. An unchanged set yields no events at all.

    Args:
        service: Snapshot the events refer to.
        previous: Last known nodes, empty on the first push.
        current: Newly pushed full node set.
    """
    old = _by_identity(previous)
    new = _by_identity(current)

    removed = sorted(identity for identity in old if identity not in new)
    added = sorted(identity for identity in new if identity not in old)
    updated = sorted(
        identity for identity in new if identity in old and old[identity] != new[identity]
    )

    events: list[ServiceChangeEvent] = []
    working = dict(old)

    for identity in removed:
        events.append(
            ServiceChangeEvent(
                ServiceEventType.NODE_REMOVED,
                service,
                _ordered(working),
                changed_node=old[identity],
            )
        )
        del working[identity]

    for identity in updated:
        working[identity] = new[identity]
        events.append(
            ServiceChangeEvent(
                ServiceEventType.NODE_UPDATED,
                service,
                _ordered(working),
                changed_node=new[identity],
            )
        )

    for identity in added:
        working[identity] = new[identity]
        events.append(
            ServiceChangeEvent(
                ServiceEventType.NODE_ADDED,
                service,
                _ordered(working),
                changed_node=new[identity],
            )
        )

    if not old and new:
        events.append(ServiceChangeEvent(ServiceEventType.SERVICE_ADDED, service, _ordered(new)))
    elif old and not new:
        events.append(ServiceChangeEvent(ServiceEventType.SERVICE_DELETED, service, _ordered(old)))
    elif events:
        events.append(ServiceChangeEvent(ServiceEventType.SERVICE_UPDATED, service, _ordered(new)))

    return events
