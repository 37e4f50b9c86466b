"""Convenience exports for change-set producer implementations."""

from .http import HttpChangeSetProducer
from .producer import (
    ChangeSetProducer,
    ChangeSetRejected,
    ProducerError,
    ProducerResponseError,
    ProducerTransportError,
    StaticChangeSetProducer,
    parse_change_set,
)

__all__ = [
    "ChangeSetProducer",
    "ChangeSetRejected",
    "HttpChangeSetProducer",
    "ProducerError",
    "ProducerResponseError",
    "ProducerTransportError",
    "StaticChangeSetProducer",
    "parse_change_set",
]
