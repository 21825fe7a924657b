import enum

# -------------------------------------------------------------- #
# Server Manager Types
# -------------------------------------------------------------- #


class ServerManagerType(enum.Enum):
    """Which set of server clients and services to construct."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"
