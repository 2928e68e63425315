"""
Removes IP addresses from free-form error messages.

Error messages often embed the local and remote socket addresses (e.g.,
`read tcp 10.0.2.15:56948->93.184.216.34:443: ...`) and we don't want to
leak the probe's address into a public report.

Corresponds to internal/scrubber.
"""

import re

SCRUBBED = "[scrubbed]"

_HEXTET = r"[0-9a-fA-F]{1,4}"

_OCTET = r"(?:25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)"

_IPV4 = rf"(?:{_OCTET}\.){{3}}{_OCTET}"

# Python's alternation picks the first alternative that matches, hence
# the forms with more trailing hextets must come first.
_IPV6 = "|".join(
    [
        rf"(?:{_HEXTET}:){{7}}{_HEXTET}",
        rf"(?:{_HEXTET}:){{6}}{_IPV4}",
        rf"(?:{_HEXTET}:){{1,4}}:{_IPV4}",
        rf"::(?:ffff(?::0{{1,4}})?:)?{_IPV4}",
        rf"{_HEXTET}:(?::{_HEXTET}){{1,6}}",
        rf"(?:{_HEXTET}:){{1,2}}(?::{_HEXTET}){{1,5}}",
        rf"(?:{_HEXTET}:){{1,3}}(?::{_HEXTET}){{1,4}}",
        rf"(?:{_HEXTET}:){{1,4}}(?::{_HEXTET}){{1,3}}",
        rf"(?:{_HEXTET}:){{1,5}}(?::{_HEXTET}){{1,2}}",
        rf"(?:{_HEXTET}:){{1,6}}:{_HEXTET}",
        rf"(?:{_HEXTET}:){{1,7}}:",
        rf":(?::{_HEXTET}){{1,7}}",
    ]
)

# The unspecified address. Only scrubbed when bracketed, since a bare
# "::" also appears in free text.
_IPV6_UNSPECIFIED = "::"

_ZONE = r"(?:%[0-9a-zA-Z._-]+)?"

_PORT = r"(?::\d{1,5})?"

_ADDRESS = re.compile(
    "|".join(
        [
            rf"\[(?:{_IPV6}|{_IPV6_UNSPECIFIED}){_ZONE}\]{_PORT}",
            rf"(?<![\w:.])(?:{_IPV6}){_ZONE}(?!\w)",
            rf"(?<![\w.]){_IPV4}{_PORT}(?!\d|\.\d)",
        ]
    )
)


def scrub(message: str) -> str:
    """Replaces every IPv4 or IPv6 address (including the port, if any,
    and the square brackets around IPv6 addresses) with SCRUBBED."""
    return _ADDRESS.sub(SCRUBBED, message)
