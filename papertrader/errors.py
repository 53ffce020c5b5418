"""Error kinds shared by the store, broker adapter, explainer and pipelines.

Every error carries a short machine-readable ``reason`` so scripts can print
the broker's structured rejection reason before exiting.
"""

from __future__ import annotations


class PaperTraderError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str = "", reason: str = ""):
        super().__init__(message or reason)
        self.reason = reason or self.__class__.__name__


class ValidationError(PaperTraderError):
    """A persisted document does not match the expected shape."""


class NotFoundError(PaperTraderError):
    """A referenced Position or Strategy does not exist."""


class PersistenceError(PaperTraderError):
    """The document store is unreachable or rejected a write."""


class InvalidTransition(PaperTraderError):
    """A lifecycle transition that is not allowed (e.g. closing twice)."""


class ExternalServiceError(PaperTraderError):
    """An external collaborator (LLM, broker) failed."""


# ── Broker ───────────────────────────────────────────────────────────

class BrokerError(ExternalServiceError):
    """Base class for broker adapter failures."""


class UnsupportedSymbol(BrokerError):
    """The internal symbol has no entry in the instrument table."""


class PriceUnavailable(BrokerError):
    """No tradeable price for the instrument (closed, halted or unknown)."""


class OrderRejected(BrokerError):
    """The broker refused the request. The order was NOT placed."""


class NetworkError(BrokerError):
    """Transport failure or missing acknowledgment.

    The outcome of the request is unknown: a market order may or may not have
    been filled. Callers must check broker-side trade state before retrying.
    """


class TradeNotRecorded(PersistenceError):
    """The broker acted (fill or close) but the store write that records it failed.

    Carries the broker-side identifiers so the operator can reconcile by hand.
    """

    def __init__(
        self,
        message: str = "",
        reason: str = "NOT_RECORDED",
        broker_trade_id: str = "",
        client_tag: str = "",
    ):
        super().__init__(message, reason)
        self.broker_trade_id = broker_trade_id
        self.client_tag = client_tag
