"""
Credentials for signing zome calls.

A conductor only runs a zome call when the caller can prove the capability to do so. The caller generates a
key pair, has the conductor grant a capability to the public half with a secret, and then signs each call
with the private half and presents the secret.
"""
import hashlib
import os
import time

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from trycp.protocol.codec import encode_payload
from trycp.support.mixins import CommonEqualityMixin

# the prefix identifying an agent public key hash
AGENT_PREFIX = bytes([0x84, 0x20, 0x24])

CAP_SECRET_SIZE = 64
NONCE_SIZE = 32

# how long a signed call stays valid, in microseconds
call_expiry = 5 * 60 * 1000 * 1000

# the tag of the capability granted to signing keys
SIGNING_GRANT_TAG = 'zome-call-signing-key'


def location_bytes(data: bytes) -> bytes:
    """
    Computes the 4 byte location suffix of a hash: the 16 byte blake2b digest folded by xor.
    >>> len(location_bytes(b'key'))
    4
    """
    digest = hashlib.blake2b(data, digest_size=16).digest()
    location = bytearray(digest[:4])
    for i in range(4, 16, 4):
        for j in range(4):
            location[j] ^= digest[i + j]
    return bytes(location)


def agent_pub_key(public_key: Ed25519PublicKey) -> bytes:
    """ builds the 39 byte agent key for a raw Ed25519 public key. """
    raw = public_key.public_bytes(encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw)
    return AGENT_PREFIX + raw + location_bytes(raw)


def random_cap_secret() -> bytes:
    return os.urandom(CAP_SECRET_SIZE)


def random_nonce() -> bytes:
    return os.urandom(NONCE_SIZE)


def now_micros():
    return int(time.time() * 1000 * 1000)


class SigningCredentials(CommonEqualityMixin):
    """
    A key pair authorized to call zome functions in a cell.
    :param private_key: the Ed25519 key that signs calls
    :param cap_secret: the secret of the capability granted to the signing key
    """

    def __init__(self, private_key: Ed25519PrivateKey, cap_secret: bytes):
        self.private_key = private_key
        self.cap_secret = cap_secret
        self.signing_key = agent_pub_key(private_key.public_key())

    @classmethod
    def generate(cls):
        return cls(Ed25519PrivateKey.generate(), random_cap_secret())

    def cap_grant(self, functions=None):
        """
        The grant that authorizes these credentials.
        :param functions: (zome name, function name) pairs, or None for all functions.
        """
        return {
            'tag': SIGNING_GRANT_TAG,
            'functions': 'all' if functions is None else {'listed': [list(f) for f in functions]},
            'access': {'assigned': {'secret': self.cap_secret, 'assignees': [self.signing_key]}},
        }

    def sign(self, data: bytes) -> bytes:
        return self.private_key.sign(data)

    def sign_zome_call(self, unsigned_call: dict) -> dict:
        """
        Signs a zome call. The signature covers the encoded call, including the nonce and expiry added here.
        The call's provenance becomes the signing key.
        :return: a new dict, the signed call
        """
        call = dict(unsigned_call)
        call['provenance'] = self.signing_key
        call['cap_secret'] = self.cap_secret
        call.setdefault('nonce', random_nonce())
        call.setdefault('expires_at', now_micros() + call_expiry)
        call['signature'] = self.sign(encode_payload(call))
        return call


def verify_zome_call(signed_call: dict) -> bool:
    """ checks that a signed call was signed by the private key matching its provenance. """
    call = dict(signed_call)
    signature = call.pop('signature', None)
    provenance = call.get('provenance')
    if not signature or not provenance or len(provenance) != len(AGENT_PREFIX) + 36:
        return False
    public_key = Ed25519PublicKey.from_public_bytes(provenance[len(AGENT_PREFIX):-4])
    try:
        public_key.verify(signature, encode_payload(call))
    except InvalidSignature:
        return False
    return True
