"""Domain-specific errors for genericble."""


class GenericBleError(Exception):
    """Base error for genericble."""


class ConfigError(GenericBleError):
    """Base configuration error."""


class ConfigValidationError(ConfigError):
    """Raised when a device file or setting does not conform to schema or semantics."""


class ConfigLoadError(ConfigError):
    """Raised when reading device configuration sources fails."""


class ValueEncodingError(GenericBleError, ValueError):
    """Raised when a write value cannot be canonicalized to bytes."""


class TransportError(GenericBleError):
    """Base transport error."""


class AdapterError(TransportError):
    """Raised on permission or adapter failures; disables automatic reconnection."""


class SubscriptionError(TransportError):
    """Raised when subscribing to or unsubscribing from notifications fails."""


class OperationTimeoutError(TransportError):
    """Raised when a transport operation does not finish before its deadline."""


class ConnectTimeoutError(OperationTimeoutError):
    """Raised when the transport never reports a connection."""


class DiscoveryTimeoutError(OperationTimeoutError):
    """Raised when service and characteristic discovery stalls."""


class DisconnectTimeoutError(OperationTimeoutError):
    """Raised when the transport never confirms a disconnect."""


class NoMatchingCharacteristicError(GenericBleError):
    """Raised when no characteristic matches the requested UUIDs and capability."""


class NotConnectedError(GenericBleError):
    """Raised when a session cannot reach the connected state."""


class QueueFullError(GenericBleError):
    """Raised when a pending request queue is at capacity."""


class MissingPeripheralError(GenericBleError):
    """Raised when a peripheral is not present in the device registry."""


class PeripheralBusyError(GenericBleError):
    """Raised when another task already holds the peripheral lock."""


class InvalidTransitionError(GenericBleError):
    """Raised on a session state change outside the state machine."""
