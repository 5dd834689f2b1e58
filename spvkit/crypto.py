# SPVKit - lightweight SPV wallet core
# Copyright (C) 2019-2020 The ElectrumSV Developers
#
# Permission is hereby granted, free of charge, to any person
# obtaining a copy of this software and associated documentation files
# (the "Software"), to deal in the Software without restriction,
# including without limitation the rights to use, copy, modify, merge,
# publish, distribute, sublicense, and/or sell copies of the Software,
# and to permit persons to whom the Software is furnished to do so,
# subject to the following conditions:
#
# The above copyright notice and this permission notice shall be
# included in all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND,
# EXPRESS OR IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF
# MERCHANTABILITY, FITNESS FOR A PARTICULAR PURPOSE AND
# NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT HOLDERS
# BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN
# ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN
# CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

import hashlib
import os
from typing import NamedTuple, Optional, Union

from Cryptodome.Cipher import AES

from .constants import DERIVED_KEY_SIZE, KDF_SALT_SIZE
from .exceptions import WrongPassword


BufferType = Union[bytearray, memoryview]


class InvalidPadding(Exception):
    pass


class KdfParams(NamedTuple):
    salt: bytes
    iterations: int

    def to_dict(self) -> dict:
        return { "salt": self.salt.hex(), "iterations": self.iterations }

    @classmethod
    def from_dict(cls, data: dict) -> "KdfParams":
        return cls(bytes.fromhex(data["salt"]), int(data["iterations"]))


def new_kdf_params(iterations: int) -> KdfParams:
    return KdfParams(os.urandom(KDF_SALT_SIZE), iterations)


def wipe_buffer(buffer: Optional[BufferType]) -> None:
    '''Overwrite the contents of a mutable buffer with zero bytes.'''
    if buffer is not None:
        buffer[:] = bytes(len(buffer))


def password_buffer(password: Union[str, bytes, bytearray]) -> bytearray:
    '''The key derivation wipes its input. A caller supplied `bytearray` is used as is, so it is
    the caller's buffer that gets wiped.'''
    if isinstance(password, bytearray):
        return password
    if isinstance(password, str):
        return bytearray(password.encode('utf-8'))
    return bytearray(password)


def derive_key(password: bytearray, kdf_params: KdfParams) -> bytearray:
    """
    Run the slow salted key derivation function over the password, returning the symmetric key
    in a mutable buffer so that whoever uses it can wipe it afterwards.

    The password buffer is always wiped, whether the derivation succeeds or not.
    """
    try:
        key = hashlib.pbkdf2_hmac('sha512', password, kdf_params.salt,
            iterations=kdf_params.iterations, dklen=DERIVED_KEY_SIZE)
        return bytearray(key)
    finally:
        wipe_buffer(password)


def append_PKCS7_padding(data: bytes) -> bytes:
    padlen = 16 - (len(data) % 16)
    return data + bytes([padlen]) * padlen


def strip_PKCS7_padding(data: bytes) -> bytes:
    if len(data) % 16 != 0 or len(data) == 0:
        raise InvalidPadding("invalid length")
    padlen = data[-1]
    if not 0 < padlen <= 16:
        raise InvalidPadding("invalid padding byte (out of range)")
    for i in data[-padlen:]:
        if i != padlen:
            raise InvalidPadding("invalid padding byte (inconsistent)")
    return data[0:-padlen]


def aes_encrypt_with_iv(key: BufferType, iv: bytes, data: bytes) -> bytes:
    data = append_PKCS7_padding(data)
    return AES.new(key, AES.MODE_CBC, iv).encrypt(data)


def aes_decrypt_with_iv(key: BufferType, iv: bytes, data: bytes) -> bytes:
    cipher = AES.new(key, AES.MODE_CBC, iv)
    data = cipher.decrypt(data)
    try:
        return strip_PKCS7_padding(data)
    except InvalidPadding:
        raise WrongPassword()


def encrypt_bytes(key: BufferType, msg: bytes) -> bytes:
    iv = bytes(os.urandom(16))
    ct = aes_encrypt_with_iv(key, iv, msg)
    return iv + ct


def decrypt_bytes(key: BufferType, ciphertext: bytes) -> bytes:
    if len(ciphertext) < 32:
        raise WrongPassword()
    iv, e = ciphertext[:16], ciphertext[16:]
    return aes_decrypt_with_iv(key, iv, e)
