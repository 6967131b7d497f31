"""Build the broker topology described by Settings."""
from __future__ import annotations

from relay.app.config.settings import Settings
from relay.app.constants import ExchangeKind
from relay.app.domain.models import BindingSpec, ExchangeSpec, QueueSpec, Topology

_KEYLESS_KINDS = (ExchangeKind.FANOUT, ExchangeKind.HEADERS)


def topology_from_settings(settings: Settings) -> Topology:
    """
    One exchange of `exchange_kind`, each configured queue bound by its routing keys.

    When a dead-letter exchange is configured it is declared as a direct exchange,
    every work queue dead-letters into it with `dead_letter_routing_key`, and the
    dead-letter queue (if any) is bound to it with the same key. Queues listed in
    `queue_binding_arguments` carry those arguments on their bindings (headers exchanges).
    """
    durable = settings.queue_durable
    dlx = settings.dead_letter_exchange
    dl_key = settings.dead_letter_routing_key if dlx else None

    exchanges = [ExchangeSpec(settings.exchange_name, settings.exchange_kind, durable)]
    queues: list[QueueSpec] = []
    bindings: list[BindingSpec] = []

    for queue_name, routing_keys in settings.queue_bindings.items():
        queues.append(
            QueueSpec(
                queue_name,
                durable=durable,
                dead_letter_exchange=dlx,
                dead_letter_routing_key=dl_key,
                queue_type=settings.queue_type,
            )
        )
        keys = routing_keys or ([""] if settings.exchange_kind in _KEYLESS_KINDS else [queue_name])
        match = tuple(settings.queue_binding_arguments.get(queue_name, {}).items())
        bindings.extend(BindingSpec(settings.exchange_name, queue_name, key, match) for key in keys)

    if dlx:
        exchanges.append(ExchangeSpec(dlx, ExchangeKind.DIRECT, durable))
        if settings.dead_letter_queue:
            queues.append(QueueSpec(settings.dead_letter_queue, durable=durable))
            bindings.append(BindingSpec(dlx, settings.dead_letter_queue, settings.dead_letter_routing_key))

    return Topology(tuple(exchanges), tuple(queues), tuple(bindings))
