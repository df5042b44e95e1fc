import pytest

from sessionguard.service.csrf import CsrfGuard


@pytest.fixture
def guard(settings, clock):
    return CsrfGuard(settings, clock=clock)


class TestCsrfGuard:
    def test_token_verifies_for_its_user(self, guard):
        token = guard.issue("user-1")
        assert guard.verify(token, "user-1")

    def test_token_bound_to_user(self, guard):
        token = guard.issue("user-1")
        assert not guard.verify(token, "user-2")

    def test_missing_values(self, guard):
        assert not guard.verify(None, "user-1")
        assert not guard.verify(guard.issue("user-1"), None)
        assert not guard.verify("", "user-1")

    def test_expired_token(self, guard, clock):
        token = guard.issue("user-1")
        clock.advance(60 * 60 + 1)
        assert not guard.verify(token, "user-1")

    def test_access_token_is_not_a_csrf_token(self, guard, store, settings, clock):
        from sessionguard.service.tokens import TokenService

        tokens = TokenService(store, settings, clock=clock)
        assert not guard.verify(tokens.issue_access("user-1"), "user-1")

    def test_tokens_are_unique(self, guard):
        assert guard.issue("user-1") != guard.issue("user-1")

    def test_other_secret_rejected(self, guard, settings, clock):
        other = CsrfGuard(settings.model_copy(update={"csrf_secret": "x" * 40}), clock=clock)
        assert not guard.verify(other.issue("user-1"), "user-1")


class TestDoubleSubmit:
    def test_matching_header_and_cookie(self, guard):
        token = guard.issue("user-1")
        assert guard.verify_request(header_token=token, cookie_token=token, user_id="user-1")

    def test_header_missing(self, guard):
        token = guard.issue("user-1")
        assert not guard.verify_request(header_token=None, cookie_token=token, user_id="user-1")

    def test_header_and_cookie_differ(self, guard):
        a = guard.issue("user-1")
        b = guard.issue("user-1")
        assert not guard.verify_request(header_token=a, cookie_token=b, user_id="user-1")

    def test_forged_pair_rejected(self, guard):
        assert not guard.verify_request(
            header_token="forged", cookie_token="forged", user_id="user-1"
        )

    def test_non_ascii_header_rejected(self, guard):
        token = guard.issue("user-1")
        assert not guard.verify_request(
            header_token=token + "\u00e9", cookie_token=token, user_id="user-1"
        )
        assert not guard.verify_request(
            header_token="\u00e9", cookie_token="\u00e9", user_id="user-1"
        )

    @pytest.mark.parametrize(
        "method,cookie,expected",
        [
            ("POST", True, True),
            ("delete", True, True),
            ("PATCH", True, True),
            ("GET", True, False),
            ("OPTIONS", True, False),
            ("POST", False, False),
        ],
    )
    def test_requires_check(self, method, cookie, expected):
        assert CsrfGuard.requires_check(method, cookie_authenticated=cookie) is expected
