class TpmError(Exception):
    pass


class AttestationError(TpmError):
    reason = "invalid"


class IncorrectSignature(AttestationError):
    reason = "signature_invalid"


class MalformedCertification(AttestationError):
    reason = "malformed_certification"


class UnsupportedAlgorithm(AttestationError):
    reason = "unsupported_algorithm"


class PackedDataMismatch(AttestationError):
    pass


class MagicMismatch(PackedDataMismatch):
    reason = "magic_mismatch"


class QualifyingDataMismatch(PackedDataMismatch):
    reason = "extra_data_mismatch"


class ObjectNameMismatch(PackedDataMismatch):
    reason = "name_mismatch"
