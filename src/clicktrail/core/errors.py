"""Error taxonomy for click capture and postback delivery."""


class TrackingError(Exception):
    """Base class for all clicktrail errors."""


class NoQueryParamError(TrackingError):
    """Inbound request carries no recognized click id query parameter."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"query has no click id param: {url}")


class InvalidClickIDError(TrackingError):
    """Click id fails the format check, or no click id cookie was sent.

    ``click_id`` is None when the error comes from a missing cookie.
    """

    def __init__(self, click_id: str | None = None):
        self.click_id = click_id
        if click_id is None:
            message = "invalid click id: no click id cookie"
        else:
            message = f"invalid click id: {click_id}"
        super().__init__(message)


class InvalidResponseStatusError(TrackingError):
    """Affiliate endpoint answered with a status other than 200 OK."""

    def __init__(self, status_code: int, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"invalid response status {status_code} from {url}")


class PostbackTransportError(TrackingError):
    """Sending the postback failed below the HTTP status level."""

    def __init__(self, message: str, url: str):
        self.url = url
        super().__init__(message)
