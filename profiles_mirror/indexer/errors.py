"""Exception hierarchy shared by the indexer, resolvers and API."""


class ProfilesMirrorError(Exception):
    pass


# Contract errors, fatal at startup

class ConfigError(ProfilesMirrorError):
    pass


class SchemaError(ProfilesMirrorError):
    pass


# Data errors, the offending event is skipped

class InvalidDigestLength(ProfilesMirrorError, ValueError):
    def __init__(self, length: int):
        super().__init__(f"Invalid digest length {length}, expected 32 bytes")
        self.length = length


class InvalidContentId(ProfilesMirrorError, ValueError):
    pass


class NameDecodeError(ProfilesMirrorError, ValueError):
    pass


# Transient upstream errors

class RPCError(ProfilesMirrorError):
    pass


class SubscriptionError(ProfilesMirrorError):
    pass


class FetchError(ProfilesMirrorError):
    """Resolving a payload from the content origin failed."""

    def __init__(self, cid: str, message: str):
        super().__init__(message)
        self.cid = cid


class OriginUnavailable(FetchError):
    pass


class PinError(ProfilesMirrorError):
    pass


# Validation errors, the CID gets blacklisted

class BlacklistedError(FetchError):
    def __init__(self, cid: str):
        super().__init__(cid, f"The CID {cid} is blacklisted because it failed validation previously")


class PayloadTooLarge(FetchError):
    pass


class MalformedPayload(FetchError):
    pass


class PayloadValidationError(FetchError):
    def __init__(self, cid: str, errors):
        super().__init__(cid, ", ".join(errors))
        self.errors = list(errors)
