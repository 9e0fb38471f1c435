import pytest

from chainsignal import crypto_utils


def test_sealed_box_roundtrip():
    private_key, public_key = crypto_utils.generate_keypair()
    ciphertext = crypto_utils.encrypt_for(public_key, b"offer")
    assert ciphertext != b"offer"
    assert crypto_utils.decrypt_with(private_key, ciphertext) == b"offer"


def test_sealing_is_randomised():
    _, public_key = crypto_utils.generate_keypair()
    assert crypto_utils.encrypt_for(public_key, b"x") != crypto_utils.encrypt_for(public_key, b"x")


def test_decrypt_with_wrong_key_fails():
    _, public_key = crypto_utils.generate_keypair()
    other_private, _ = crypto_utils.generate_keypair()
    ciphertext = crypto_utils.encrypt_for(public_key, b"secret")
    with pytest.raises(crypto_utils.CryptoError):
        crypto_utils.decrypt_with(other_private, ciphertext)


def test_encrypt_requires_bytes():
    _, public_key = crypto_utils.generate_keypair()
    with pytest.raises(TypeError):
        crypto_utils.encrypt_for(public_key, "text")


def test_public_key_hex_roundtrip():
    _, public_key = crypto_utils.generate_keypair()
    encoded = crypto_utils.encode_public_key(public_key)
    assert len(encoded) == 2 * crypto_utils.KEY_SIZE
    assert crypto_utils.decode_public_key(encoded) == public_key
    assert crypto_utils.decode_public_key("0x" + encoded) == public_key
    assert crypto_utils.decode_public_key(bytes(public_key)) == public_key
    assert crypto_utils.decode_public_key(public_key) is public_key


@pytest.mark.parametrize("invalid", ["", "zz", "ab" * 31, b"\x00" * 16])
def test_decode_public_key_rejects_invalid(invalid):
    with pytest.raises(ValueError):
        crypto_utils.decode_public_key(invalid)


def test_decode_public_key_rejects_other_types():
    with pytest.raises(TypeError):
        crypto_utils.decode_public_key(1234)


def test_decode_private_key_from_hex():
    private_key, _ = crypto_utils.generate_keypair()
    assert crypto_utils.decode_private_key(bytes(private_key).hex()) == private_key
    with pytest.raises(ValueError):
        crypto_utils.decode_private_key("abcd")
