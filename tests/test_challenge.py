"""
Tests for provider challenge detection.
"""

import pytest

from oauthguard.challenge import Challenge, ChallengeDetector, ChallengeType
from oauthguard.core.config import ChallengeConfig


TURNSTILE_PAGE = """
<html><body>
  <div id="challenge-stage">
    <div class="cf-turnstile" data-sitekey="ABC123"></div>
  </div>
</body></html>
"""

CHALLENGE_STAGE_PAGE = """
<html><body><div id="challenge-stage"><noscript>Enable JavaScript</noscript></div></body></html>
"""

LEGACY_PAGE = "<html><head><title>Just a moment...</title></head><body></body></html>"


@pytest.fixture
def detector():
    return ChallengeDetector()


class TestChallengeDetector:
    """Test detection precedence"""

    def test_turnstile_takes_precedence(self, detector):
        challenge = detector.detect(403, TURNSTILE_PAGE)

        assert challenge.type == ChallengeType.TURNSTILE
        assert challenge.type == "turnstile"
        assert challenge.site_key == "ABC123"
        assert challenge.challenge_data["turnstile_present"] is True

    def test_turnstile_with_single_quoted_site_key(self, detector):
        body = "<div class='cf-turnstile' data-sitekey='0x4AAA'></div>"
        challenge = detector.detect(403, body)

        assert challenge.site_key == "0x4AAA"

    def test_turnstile_without_site_key(self, detector):
        challenge = detector.detect(403, '<div class="cf-turnstile"></div>')

        assert challenge.type == ChallengeType.TURNSTILE
        assert challenge.site_key is None

    def test_challenge_stage_is_browser_challenge(self, detector):
        challenge = detector.detect(503, CHALLENGE_STAGE_PAGE)

        assert challenge.type == ChallengeType.BROWSER_CHALLENGE
        assert challenge.site_key is None
        assert challenge.challenge_data == {"challenge_stage_present": True}
        assert challenge.manual_verification is True

    def test_legacy_marker_is_browser_challenge(self, detector):
        challenge = detector.detect(503, LEGACY_PAGE)

        assert challenge.type == ChallengeType.BROWSER_CHALLENGE
        assert challenge.challenge_data == {"legacy_detection": True}

    def test_status_429_is_rate_limit(self, detector):
        challenge = detector.detect(429, "Too Many Requests")

        assert challenge.type == "rate_limit"
        assert challenge.challenge_data["rate_limited"] is True
        assert challenge.manual_verification is False

    def test_body_markers_win_over_429(self, detector):
        challenge = detector.detect(429, CHALLENGE_STAGE_PAGE)

        assert challenge.type == ChallengeType.BROWSER_CHALLENGE

    def test_oauth_error_is_not_a_challenge(self, detector):
        assert detector.detect(400, '{"error":"invalid_grant"}') is None

    def test_empty_body(self, detector):
        assert detector.detect(500, None) is None
        assert detector.detect(200, "") is None

    def test_custom_markers(self):
        detector = ChallengeDetector(ChallengeConfig(legacy_markers=("Checking your browser",)))

        assert detector.detect(503, "Checking your browser before accessing").type == ChallengeType.BROWSER_CHALLENGE
        assert detector.detect(503, LEGACY_PAGE) is None


class TestChallenge:
    """Test the challenge value object"""

    def test_challenge_data_is_read_only(self):
        challenge = Challenge(type=ChallengeType.RATE_LIMIT, challenge_data={"rate_limited": True})

        with pytest.raises(TypeError):
            challenge.challenge_data["rate_limited"] = False

    def test_to_dict(self):
        challenge = Challenge(type=ChallengeType.TURNSTILE, site_key="KEY", challenge_data={"turnstile_present": True})

        assert challenge.to_dict() == {
            "type": "turnstile",
            "site_key": "KEY",
            "challenge_data": {"turnstile_present": True},
        }
