import pytest

from conftest import DESKTOP_FIREFOX_UA, MOBILE_FIREFOX_UA
from credstore.service.user_agent import ParsedUserAgent, RegexUserAgentParser


@pytest.fixture
def parser():
    return RegexUserAgentParser()


def test_desktop_firefox(parser):
    parsed = parser.parse(DESKTOP_FIREFOX_UA)
    assert parsed == ParsedUserAgent(
        browser="Firefox",
        browser_version="41",
        os="Mac OS X",
        os_version="10.10",
        device_type=None,
    )


def test_mobile_firefox(parser):
    parsed = parser.parse(MOBILE_FIREFOX_UA)
    assert parsed.browser == "Firefox Mobile"
    assert parsed.browser_version == "41"
    assert parsed.os == "Android"
    assert parsed.os_version == "4.4"
    assert parsed.device_type == "mobile"


def test_iphone_safari_truncates_os_version(parser):
    parsed = parser.parse(
        "Mozilla/5.0 (iPhone; CPU iPhone OS 9_3_2 like Mac OS X) AppleWebKit/601.1.46 "
        "(KHTML, like Gecko) Version/9.0 Mobile/13F69 Safari/601.1"
    )
    assert parsed.browser == "Mobile Safari"
    assert parsed.browser_version == "9"
    assert parsed.os == "iOS"
    assert parsed.os_version == "9.3"
    assert parsed.device_type == "mobile"
    assert parsed.form_factor == "iPhone"


def test_windows_chrome(parser):
    parsed = parser.parse(
        "Mozilla/5.0 (Windows NT 6.1; WOW64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/47.0.2526.106 Safari/537.36"
    )
    assert (parsed.browser, parsed.browser_version) == ("Chrome", "47")
    assert (parsed.os, parsed.os_version) == ("Windows", "7")
    assert parsed.device_type is None


def test_ipad_is_tablet(parser):
    parsed = parser.parse(
        "Mozilla/5.0 (iPad; CPU OS 9_1 like Mac OS X) AppleWebKit/601.1.46 "
        "(KHTML, like Gecko) Version/9.0 Mobile/13B143 Safari/601.1"
    )
    assert parsed.device_type == "tablet"
    assert parsed.form_factor == "iPad"
    assert parsed.os_version == "9.1"


@pytest.mark.parametrize("raw", [None, "", "curl/7.35.0"])
def test_unknown_agents_have_absent_fields(parser, raw):
    parsed = parser.parse(raw)
    assert parsed.browser is None
    assert parsed.os is None
    assert parsed.device_type is None


def test_token_field_mapping(parser):
    fields = parser.parse(DESKTOP_FIREFOX_UA).as_token_fields()
    assert fields["ua_browser"] == "Firefox"
    assert set(fields) == {
        "ua_browser",
        "ua_browser_version",
        "ua_os",
        "ua_os_version",
        "ua_device_type",
        "ua_form_factor",
    }
