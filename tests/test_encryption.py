"""Token encryption at rest."""

import pytest

from naffles_bot.shared.encryption import TokenCipher, TokenDecryptionError


def test_ciphertext_hides_the_token():
    cipher = TokenCipher(TokenCipher.generate_key())
    sealed = cipher.encrypt("discord-access-token")
    assert "discord-access-token" not in sealed
    assert cipher.decrypt(sealed) == "discord-access-token"


def test_wrong_key_cannot_decrypt():
    sealed = TokenCipher(TokenCipher.generate_key()).encrypt("secret")
    with pytest.raises(TokenDecryptionError):
        TokenCipher(TokenCipher.generate_key()).decrypt(sealed)


def test_ephemeral_key_when_unconfigured(caplog):
    cipher = TokenCipher()
    assert cipher.decrypt(cipher.encrypt("x")) == "x"
    assert "ephemeral key" in caplog.text
