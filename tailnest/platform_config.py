"""Client configuration documents: Windows registry files and Apple profiles."""

from __future__ import annotations

import plistlib
import uuid

__all__ = [
    "APPLE_CONFIG_CONTENT_TYPE",
    "HTML_CONTENT_TYPE",
    "PAYLOAD_IDENTIFIER",
    "SUPPORTED_APPLE_PLATFORMS",
    "UnsupportedPlatform",
    "WINDOWS_REG_CONTENT_TYPE",
    "apple_config_message",
    "apple_platform_config",
    "windows_config_message",
    "windows_registry_config",
]

HTML_CONTENT_TYPE = "text/html; charset=utf-8"
WINDOWS_REG_CONTENT_TYPE = "text/x-ms-regedit; charset=utf-8"
APPLE_CONFIG_CONTENT_TYPE = "application/x-apple-aspen-config; charset=utf-8"

PAYLOAD_IDENTIFIER = "org.tailnest.controlserver"
PAYLOAD_DISPLAY_NAME = "Tailnest"
SUPPORTED_APPLE_PLATFORMS = ("macos", "ios")

_HTML_ESCAPES = {
    "\0": "\ufffd",
    '"': "&#34;",
    "'": "&#39;",
    "&": "&amp;",
    "+": "&#43;",
    "<": "&lt;",
    ">": "&gt;",
}


class UnsupportedPlatform(ValueError):
    """The requested Apple platform has no configuration profile."""


def _escape_html(text: str) -> str:
    return "".join(_HTML_ESCAPES.get(char, char) for char in text)


_WINDOWS_MESSAGE = """
<html>
	<body>
		<h1>tailnest</h1>
		<h2>Windows registry configuration</h2>
		<p>
		    This page provides Windows registry information for the official Windows Tailscale client.
		<p>
		<p>
		    The registry file will configure Tailscale to use <code>{url}</code> as its control server.
		<p>
		<h3>Caution</h3>
		<p>You should always download and inspect the registry file before installing it:</p>
		<pre><code>curl {url}/windows/tailscale.reg</code></pre>

		<h2>Installation</h2>
		<p>The server can be set as the default by running the registry file:</p>

		<p>
		    <a href="/windows/tailscale.reg" download="tailscale.reg">Windows registry file</a>
		</p>

		<ol>
			<li>Download the registry file, then run it</li>
			<li>Follow the prompts</li>
			<li>Install and run the official windows Tailscale client</li>
			<li>When the installation has finished, start Tailscale, and log in by clicking the icon in the system tray</li>
		</ol>
		<p>Or</p>
		<p>Open command prompt with Administrator rights. Issue the following commands to add the required registry entries:</p>
		<pre>
<code>REG ADD "HKLM\\Software\\Tailscale IPN" /v UnattendedMode /t REG_SZ /d always
REG ADD "HKLM\\Software\\Tailscale IPN" /v LoginURL /t REG_SZ /d "{url}"</code></pre>
		<p>
		    Restart Tailscale and log in.
		<p>
	</body>
</html>
"""

_WINDOWS_REGISTRY = (
    "Windows Registry Editor Version 5.00\n"
    "\n"
    "[HKEY_LOCAL_MACHINE\\SOFTWARE\\Tailscale IPN]\n"
    '"UnattendedMode"="always"\n'
    '"LoginURL"="{url}"\n'
)

_APPLE_MESSAGE = """
<html>
	<body>
		<h1>tailnest</h1>
		<h2>Apple configuration profiles</h2>
		<p>
		    This page provides configuration profiles for the official Tailscale clients for iOS and macOS.
		</p>
		<p>
		    The profiles will configure Tailscale.app to use <code>{url}</code> as its control server.
		</p>

		<h3>Caution</h3>
		<p>You should always download and inspect the profile before installing it:</p>
		<pre><code>curl {url}/apple/macos</code></pre>

		<h2>Profiles</h2>

		<h3>macOS</h3>
		<p>The server can be set as the default by installing a configuration profile:</p>
		<p>
		    <a href="/apple/macos" download="tailnest_macos.mobileconfig">macOS profile</a>
		</p>

		<ol>
		<li>Download the profile, then open it. When it has been opened, there should be a notification that a profile can be installed</li>
		<li>Open System Preferences and go to "Profiles"</li>
		<li>Find and install the profile</li>
		<li>Restart Tailscale.app and log in</li>
		</ol>

		<p>Or</p>
		<p>Use your terminal to configure the default setting for Tailscale by issuing:</p>
		<code>defaults write io.tailscale.ipn.macos ControlURL {url}</code>

		<p>Restart Tailscale.app and log in.</p>

	</body>
</html>"""


def windows_config_message(server_url: str) -> str:
    """HTML page explaining how to point the Windows client at ``server_url``."""
    return _WINDOWS_MESSAGE.format(url=_escape_html(server_url))


def windows_registry_config(server_url: str) -> str:
    """A ``.reg`` file that makes ``server_url`` the Windows client's login server."""
    return _WINDOWS_REGISTRY.format(url=server_url)


def apple_config_message(server_url: str) -> str:
    """HTML page pointing the user at the Apple configuration profiles."""
    return _APPLE_MESSAGE.format(url=_escape_html(server_url))


def apple_platform_config(server_url: str, platform: str) -> str:
    """A ``.mobileconfig`` profile for ``platform`` (``macos`` or ``ios``)."""
    if platform not in SUPPORTED_APPLE_PLATFORMS:
        raise UnsupportedPlatform("Invalid platform, only ios and macos is supported")

    profile_id = uuid.uuid4()
    content_id = uuid.uuid4()
    payload = {
        "PayloadType": f"io.tailscale.ipn.{platform}",
        "PayloadUUID": str(content_id),
        "PayloadIdentifier": PAYLOAD_IDENTIFIER,
        "PayloadVersion": 1,
        "PayloadEnabled": True,
        "ControlURL": server_url,
    }
    profile = {
        "PayloadUUID": str(profile_id),
        "PayloadDisplayName": PAYLOAD_DISPLAY_NAME,
        "PayloadDescription": f"Configure Tailscale login server to: {server_url}",
        "PayloadIdentifier": PAYLOAD_IDENTIFIER,
        "PayloadRemovalDisallowed": False,
        "PayloadType": "Configuration",
        "PayloadVersion": 1,
        "PayloadContent": [payload],
    }
    return plistlib.dumps(profile, sort_keys=False).decode("utf-8")