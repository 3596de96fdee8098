"""
User-Agent parsing for analytics rows and dynamic-link platform rules.
"""

import re
from dataclasses import dataclass
from typing import Optional

from ua_parser import parse

_TABLET_HINT = re.compile(r"ipad|tablet|kindle|silk|playbook|sm-t\d", re.IGNORECASE)
_MOBILE_HINT = re.compile(r"mobi|iphone|ipod|android.+mobile|windows phone", re.IGNORECASE)
_MOBILE_OS = {"ios", "android", "windows phone", "blackberry os"}


@dataclass(frozen=True)
class UserAgentInfo:
    browser: Optional[str] = None
    browser_version: Optional[str] = None
    os: Optional[str] = None
    os_version: Optional[str] = None
    device: Optional[str] = None
    device_type: Optional[str] = None


def _version(*parts: Optional[str]) -> Optional[str]:
    present = [part for part in parts if part]
    return ".".join(present) if present else None


def _known(family: Optional[str]) -> Optional[str]:
    if not family or family == "Other":
        return None
    return family


def detect_device_type(user_agent: str, os_name: Optional[str], device_family: Optional[str]) -> str:
    """Classify a user agent as bot, tablet, mobile or desktop."""
    if device_family == "Spider":
        return "bot"
    if _TABLET_HINT.search(user_agent):
        return "tablet"
    if _MOBILE_HINT.search(user_agent):
        return "mobile"
    if os_name and os_name.lower() in _MOBILE_OS:
        # Android without the "Mobile" token is a tablet
        return "tablet" if os_name.lower() == "android" else "mobile"
    return "desktop"


def parse_user_agent(user_agent: Optional[str]) -> UserAgentInfo:
    """
    Parse a User-Agent header.

    Unknown components come back as None; an empty header yields an empty
    UserAgentInfo.
    """
    if not user_agent:
        return UserAgentInfo()

    result = parse(user_agent)

    browser = browser_version = os_name = os_version = device = None

    if result.user_agent is not None:
        browser = _known(result.user_agent.family)
        browser_version = _version(result.user_agent.major, result.user_agent.minor, result.user_agent.patch)
    if result.os is not None:
        os_name = _known(result.os.family)
        os_version = _version(result.os.major, result.os.minor, result.os.patch)
    device_family = result.device.family if result.device is not None else None
    if result.device is not None:
        device = _known(result.device.model) or _known(result.device.family)

    return UserAgentInfo(
        browser=browser,
        browser_version=browser_version,
        os=os_name,
        os_version=os_version,
        device=device,
        device_type=detect_device_type(user_agent, os_name, device_family),
    )
