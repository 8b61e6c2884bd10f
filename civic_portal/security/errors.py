"""Encryption Layer Errors

Why: Callers must tell a broken configuration apart from a flaky HSM.
How: One base class, one subclass per failure domain. Transport errors are
chained with ``raise ... from`` so the original cause stays in the traceback.
"""


class EncryptionLayerError(Exception):
    """Base class for every failure raised by the field encryption layer"""


class ConfigurationError(EncryptionLayerError):
    """Fatal: missing certificates or a partial/contradictory FORTANIX_* setup"""


class AuthenticationFailed(EncryptionLayerError):
    """The session exchange with the HSM did not produce a usable token"""


class EncryptionFailed(EncryptionLayerError):
    """A write-path encrypt call failed; the write must be aborted"""


class DecryptionFailed(EncryptionLayerError):
    """A read-path decrypt call failed; the field codec substitutes a label"""
