"""User-agent classification used by the analytics breakdowns.

Pure functions over the raw header string. Mobile platforms are matched
before desktop ones because iOS agents also mention "Mac OS X" and Android
agents also mention "Linux".
"""

__all__ = ["classify_device", "classify_os"]

_OS_MARKERS = (
    (("iPhone", "iPad", "iPod"), "iOS"),
    (("Android",), "Android"),
    (("Windows",), "Windows"),
    (("Mac",), "macOS"),
    (("Linux", "X11"), "Linux"),
)

_MOBILE_MARKERS = ("Mobile", "Android", "iPhone", "iPad", "iPod")


def classify_os(user_agent: str | None) -> str:
    if not user_agent:
        return "Other"
    for markers, name in _OS_MARKERS:
        if any(marker in user_agent for marker in markers):
            return name
    return "Other"


def classify_device(user_agent: str | None) -> str:
    if user_agent and any(marker in user_agent for marker in _MOBILE_MARKERS):
        return "Mobile"
    return "Desktop"
