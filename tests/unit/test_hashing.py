"""
Unit tests for content addressing (backy/backup/hashing.py).
"""

import hashlib

import pytest

from backy.backup.hashing import HashMethod, digest, is_content_id


class TestDigest:

    def test_default_is_sha256(self):
        assert digest(b'hello') == hashlib.sha256(b'hello').hexdigest()

    def test_blake2b_uses_32_byte_digest(self):
        expected = hashlib.blake2b(b'hello', digest_size=32).hexdigest()
        assert digest(b'hello', HashMethod.blake2b) == expected

    def test_same_bytes_same_id(self):
        assert digest(b'a' * 1000) == digest(b'a' * 1000)

    def test_different_bytes_different_id(self):
        assert digest(b'a') != digest(b'b')

    @pytest.mark.parametrize('method', list(HashMethod))
    def test_ids_are_lowercase_hex(self, method):
        cid = digest(b'data', method)
        assert len(cid) == method.value.hex_length
        assert cid == cid.lower()


class TestHashMethod:

    def test_from_name(self):
        assert HashMethod.from_name('sha3_256') is HashMethod.sha3_256

    def test_from_name_unknown(self):
        with pytest.raises(ValueError, match='Unknown hash method'):
            HashMethod.from_name('md5')


class TestIsContentId:

    def test_valid(self):
        assert is_content_id(digest(b'x'))

    def test_wrong_length(self):
        assert not is_content_id('abc')

    def test_uppercase_rejected(self):
        assert not is_content_id(digest(b'x').upper())

    def test_non_string(self):
        assert not is_content_id(None)
