"""Exception types for tunnel setup and teardown.

Every error carries a short ``kind`` string so that handles and log lines can
report the failure class without isinstance chains.
"""


class TunnelError(Exception):
    """Base class for all tunnel errors."""
    kind = "TunnelError"


class OptionError(TunnelError):
    """The --tunnel option value was rejected."""
    kind = "OptionError"


class InvalidExpression(TunnelError):
    """A host-range expression could not be parsed."""
    kind = "InvalidExpression"


class EmptyNodeSet(TunnelError):
    """A host-range expression expanded to no hosts."""
    kind = "EmptyNodeSet"


class ForwardSpecError(TunnelError, ValueError):
    kind = "ForwardSpecError"


class MalformedForwardSpec(ForwardSpecError):
    """A forward entry is not of the form digits:digits."""
    kind = "MalformedForwardSpec"


class PortOutOfRange(ForwardSpecError):
    """A port is 0 or above 65535."""
    kind = "PortOutOfRange"


class SpawnFailed(TunnelError):
    """The helper process could not be started."""
    kind = "SpawnFailed"


class HandshakeTimeout(TunnelError):
    """The helper did not print its handshake line in time."""
    kind = "HandshakeTimeout"


class HandshakeFailed(TunnelError):
    """The helper closed stdout early or printed an unusable line."""
    kind = "HandshakeFailed"


class JobQueryFailed(TunnelError):
    """The scheduler could not describe the current job step."""
    kind = "JobQueryFailed"


class TeardownPartialFailure(TunnelError):
    """A removal instruction could not be confirmed."""
    kind = "TeardownPartialFailure"
