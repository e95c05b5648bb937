class FeedError(Exception):
    """Base feed engine error."""


class InvalidPagingParameterError(FeedError):
    """Raised when page or page_size fall outside the accepted bounds."""


class StoreUnavailableError(FeedError):
    """Raised when the fairness signal store cannot be read or written."""


class ListingSourceUnavailableError(FeedError):
    """Raised when the candidate snapshot cannot be loaded."""


class CatalogValidationError(FeedError):
    """Raised when a listing document cannot be turned into a candidate."""
