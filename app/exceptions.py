"""Exception types shared by the services and the HTTP layer."""


class InvoiceHarvesterError(Exception):
    """Base class for application errors."""


class NotAuthenticatedError(InvoiceHarvesterError):
    """No usable access token: the user has to sign in again."""

    def __init__(self, message: str = "No valid access token available. User needs to re-authenticate."):
        super().__init__(message)


class OAuthError(InvoiceHarvesterError):
    """The OAuth provider rejected a code exchange or refresh."""


class MailProviderError(InvoiceHarvesterError):
    """The mail API returned an error or an unexpected payload."""


class ExtractionError(InvoiceHarvesterError):
    """The model output could not be turned into an invoice record."""


class JobAlreadyRunningError(InvoiceHarvesterError):
    """A scan is already in flight."""

    def __init__(self, message: str = "Job is already running"):
        super().__init__(message)
