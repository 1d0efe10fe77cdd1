class ShotbotError(Exception):
    pass


class ConfigurationError(ShotbotError):
    """Missing or unusable startup configuration. Fatal."""


class StoreError(ShotbotError):
    """A remote store call failed (network, auth, API error)."""


class RecordStoreError(StoreError):
    pass


class BlobStoreError(StoreError):
    pass
