"""JavaScript challenge tokens and the challenge page.

A client proves it executes JavaScript by presenting the ``js_verified``
cookie set by the challenge page. The cookie value is
``base64(HMAC-SHA256(secret, ip))``: it is never stored, it is verified by
recomputing it, and it does not expire. Rotating the secret invalidates
every outstanding token at once.
"""

import base64
import hashlib
import hmac
import json
from typing import Iterable, Optional, Tuple

from fastapi_bot_trap.automation import AUTOMATION_DETECTION_JS
from fastapi_bot_trap.browser import meets_minimum
from fastapi_bot_trap.utils import cookie_values

COOKIE_NAME = "js_verified"


class ChallengeTokenIssuer:
    """Issues and verifies stateless JS-challenge tokens."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("A non-empty challenge secret is required")
        self._secret = secret.encode("utf-8")

    def issue(self, ip: str) -> str:
        mac = hmac.new(self._secret, ip.encode("utf-8"), hashlib.sha256)
        return base64.b64encode(mac.digest()).decode("ascii")

    def verify(self, ip: str, token: Optional[str]) -> bool:
        if not token:
            return False
        return hmac.compare_digest(token.encode("utf-8"), self.issue(ip).encode("ascii"))

    def needs_challenge(self, cookie_header: Optional[str], ip: str) -> bool:
        """True unless some ``js_verified`` cookie carries this IP's token."""
        tokens = cookie_values(cookie_header, COOKIE_NAME)
        return not any(self.verify(ip, token) for token in tokens)

    def needs_challenge_with_whitelist(
        self,
        cookie_header: Optional[str],
        user_agent: str,
        ip: str,
        browser_whitelist: Iterable[Tuple[str, int]],
    ) -> bool:
        """Like ``needs_challenge`` but whitelisted browsers skip the check."""
        if meets_minimum(user_agent, browser_whitelist):
            return False
        return self.needs_challenge(cookie_header, ip)

    def cookie_value(self, ip: str) -> str:
        return f"{COOKIE_NAME}={self.issue(ip)}; path=/; SameSite=Strict"

    def render_challenge_page(self, ip: str, report_path: str = "/automation-report") -> str:
        """HTML that runs the automation checks, sets the cookie and reloads."""
        cookie = json.dumps(self.cookie_value(ip))
        endpoint = json.dumps(report_path)
        return f"""<!DOCTYPE html>
<html><head><script>{AUTOMATION_DETECTION_JS}</script></head><body>
<script>
    (function() {{
        function proceed() {{
            document.cookie = {cookie};
            window.location.reload();
        }}
        if (!window._checkAutomation) {{
            proceed();
            return;
        }}
        window._checkAutomation().then(function(result) {{
            if (!result.automationDetected) {{
                return null;
            }}
            return fetch({endpoint}, {{
                method: 'POST',
                headers: {{ 'Content-Type': 'application/json' }},
                body: JSON.stringify({{
                    automationDetected: true,
                    score: result.score,
                    checks: result.checks
                }})
            }});
        }}).catch(function() {{}}).then(proceed);
    }})();
</script>
<noscript>Please enable JavaScript to continue.</noscript>
</body></html>
"""
