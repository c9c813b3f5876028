from ecp_api.services.local_auth import (
    generate_otp,
    hash_password,
    hash_verification_code,
    verify_password,
)


def test_password_hash_and_verify():
    password_hash = hash_password("StrongPassw0rd!", iterations=1000)
    assert password_hash.startswith("pbkdf2_sha256$1000$")
    assert verify_password("StrongPassw0rd!", password_hash)
    assert not verify_password("wrong-password", password_hash)


def test_password_hash_is_salted():
    assert hash_password("same", iterations=1000) != hash_password("same", iterations=1000)


def test_verify_password_rejects_malformed_hash():
    assert not verify_password("anything", "")
    assert not verify_password("anything", "bcrypt$12$abc$def")
    assert not verify_password("anything", "pbkdf2_sha256$notanumber$abc$def")


def test_generate_otp_is_six_digits():
    for _ in range(50):
        code = generate_otp()
        assert len(code) == 6
        assert code.isdigit()


def test_verification_hash_is_url_safe_and_unpredictable():
    first = hash_verification_code("123456")
    second = hash_verification_code("123456")
    assert first != second
    assert len(first) == 64
    assert all(ch in "0123456789abcdef" for ch in first)
