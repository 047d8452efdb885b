from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Protocol

# Longer strings are almost always junk; cap the regex work
_MAX_USER_AGENT_LENGTH = 1024


@dataclass(frozen=True)
class ParsedUserAgent:
    browser: Optional[str] = None
    browser_version: Optional[str] = None
    os: Optional[str] = None
    os_version: Optional[str] = None
    device_type: Optional[str] = None
    form_factor: Optional[str] = None

    def as_token_fields(self) -> dict:
        return {
            "ua_browser": self.browser,
            "ua_browser_version": self.browser_version,
            "ua_os": self.os,
            "ua_os_version": self.os_version,
            "ua_device_type": self.device_type,
            "ua_form_factor": self.form_factor,
        }


class UserAgentParser(Protocol):
    def parse(self, user_agent: Optional[str]) -> ParsedUserAgent:
        ...


def _major_minor(version: Optional[str]) -> Optional[str]:
    if not version:
        return None
    parts = re.split(r"[._]", version)
    return ".".join(parts[:2])


def _major(version: Optional[str]) -> Optional[str]:
    if not version:
        return None
    return version.split(".")[0]


_WINDOWS_VERSIONS = {
    "10.0": "10",
    "6.3": "8.1",
    "6.2": "8",
    "6.1": "7",
    "6.0": "Vista",
    "5.1": "XP",
}

_BROWSER_PATTERNS = (
    ("Edge", re.compile(r"\bEdg(?:e|A|iOS)?/(\d[\w.]*)")),
    ("Opera", re.compile(r"\bOPR/(\d[\w.]*)")),
    ("Firefox iOS", re.compile(r"\bFxiOS/(\d[\w.]*)")),
    ("Firefox", re.compile(r"\bFirefox/(\d[\w.]*)")),
    ("Chrome Mobile iOS", re.compile(r"\bCriOS/(\d[\w.]*)")),
    ("Chrome", re.compile(r"\bChrome/(\d[\w.]*)")),
    ("Safari", re.compile(r"\bVersion/(\d[\w.]*).*\bSafari/")),
)

_OS_PATTERNS = (
    ("iOS", re.compile(r"\b(?:iPhone|iPad|iPod)\b.*?\bOS (\d+(?:_\d+)*)")),
    ("Android", re.compile(r"\bAndroid[ /]?(\d+(?:\.\d+)*)?")),
    ("Windows", re.compile(r"\bWindows NT (\d+\.\d+)")),
    ("Mac OS X", re.compile(r"\bMac OS X (\d+(?:[._]\d+)*)")),
    ("Chrome OS", re.compile(r"\bCrOS \w+ (\d+(?:\.\d+)*)")),
    ("Linux", re.compile(r"\bLinux\b()")),
)


class RegexUserAgentParser:
    """Small pattern-based user-agent parser covering common browsers and platforms.

    Browser versions keep only the major component; OS versions keep
    major.minor. Desktop agents report no device type.
    """

    def parse(self, user_agent: Optional[str]) -> ParsedUserAgent:
        if not user_agent:
            return ParsedUserAgent()
        ua = user_agent[:_MAX_USER_AGENT_LENGTH]

        os_name, os_version = None, None
        for name, pattern in _OS_PATTERNS:
            match = pattern.search(ua)
            if match:
                os_name = name
                os_version = _major_minor(match.group(1))
                break
        if os_name == "Windows" and os_version:
            os_version = _WINDOWS_VERSIONS.get(os_version, os_version)

        device_type, form_factor = self._device(ua)

        browser, browser_version = None, None
        for name, pattern in _BROWSER_PATTERNS:
            match = pattern.search(ua)
            if match:
                browser = name
                browser_version = _major(match.group(1))
                break
        if device_type in {"mobile", "tablet"}:
            if browser in {"Firefox", "Chrome"}:
                browser = f"{browser} Mobile"
            elif browser == "Safari" and os_name == "iOS":
                browser = "Mobile Safari"

        return ParsedUserAgent(
            browser=browser,
            browser_version=browser_version,
            os=os_name,
            os_version=os_version,
            device_type=device_type,
            form_factor=form_factor,
        )

    @staticmethod
    def _device(ua: str) -> tuple[Optional[str], Optional[str]]:
        if "iPad" in ua:
            return "tablet", "iPad"
        if "Tablet" in ua:
            return "tablet", None
        if "iPhone" in ua or "iPod" in ua:
            return "mobile", "iPhone" if "iPhone" in ua else "iPod"
        if "Mobile" in ua:
            return "mobile", None
        return None, None
