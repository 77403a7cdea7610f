import enum
from typing import Any, List, Union


def is_accepted(algorithm: Union[str, "Hash"], accepted: List[Any]) -> bool:
    """Check whether algorithm is accepted

    @param algorithm: algorithm to be checked
    @param accepted: a list of acceptable algorithms
    """
    # Check direct match first.
    if algorithm in accepted:
        return True

    # Spellings like "SHA-256" and "sha256" name the same hash
    normalized_algorithm = Hash.normalize(str(algorithm))
    for accepted_alg in accepted:
        if Hash.normalize(str(accepted_alg)) == normalized_algorithm:
            return True

    return False


class Hash(str, enum.Enum):
    # Names compatible with tpm2-tools (man/common/alg.md)
    SHA1 = "sha1"
    SHA256 = "sha256"
    SHA384 = "sha384"
    SHA512 = "sha512"

    @staticmethod
    def normalize(algorithm: str) -> str:
        """Normalize the spellings used by OpenSSL and the TCG specs ("SHA-256", "SHA256") to tpm2-tools names"""
        return algorithm.strip().lower().replace("-", "").replace("_", "")

    @staticmethod
    def is_recognized(algorithm: str) -> bool:
        try:
            Hash(Hash.normalize(algorithm))
        except ValueError:
            return False
        return True

    @staticmethod
    def from_name(algorithm: str) -> "Hash":
        return Hash(Hash.normalize(algorithm))


class Sign(str, enum.Enum):
    RSASSA = "rsassa"
    RSAPSS = "rsapss"
    ECDSA = "ecdsa"

    @staticmethod
    def is_recognized(algorithm: str) -> bool:
        return algorithm in list(Sign)
