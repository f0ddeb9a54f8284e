"""Error taxonomy shared by the feed, the reconciler and the match coordinator."""


class MatchFeedError(Exception):
    """Base exception for matchfeed errors."""


class Unauthenticated(MatchFeedError):
    """No viewer id is available for the operation."""

    def __init__(self, message: str = "User not authenticated"):
        super().__init__(message)


class TransientFetchFailure(MatchFeedError):
    """A ledger query, profile join or block-list fetch failed."""


class TransactionCommitFailure(MatchFeedError):
    """The atomic swipe commit failed; nothing was applied and the event stays pending."""

    def __init__(self, event_id: str, message: str = "Failed to record your choice. Please try again."):
        self.event_id = event_id
        super().__init__(message)


class TransactionInFlight(MatchFeedError):
    """Another swipe transaction is still running for this viewer session."""


class EventNotFound(MatchFeedError, LookupError):
    """No pending like or superlike with this id is addressed to the viewer."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"interest event {event_id} not found")
