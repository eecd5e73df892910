"""Exception hierarchy shared by the polling, automation and alert packages."""


class MonitorError(Exception):
    """Base class for all errors raised by the monitor."""


class ConfigError(MonitorError):
    """Invalid configuration, raised before anything is scheduled."""


class InvalidCriteriaError(MonitorError, ValueError):
    """Contract selection criteria that violate their bid bounds."""


class InvalidAlertError(MonitorError, ValueError):
    """Alert definition with an unknown type or an out-of-range value."""


class AlertNotFoundError(MonitorError):
    pass


class ChainClientError(MonitorError):
    """A read against the chain failed."""


class ChainClientTimeoutError(ChainClientError):
    pass


class SubmissionError(MonitorError):
    """The transaction engine rejected or failed a batch submission."""
