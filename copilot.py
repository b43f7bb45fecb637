"""
Minimal GitHub Copilot chat client used for deck and quiz generation.

Tokens live in a dotenv-style file (access_token=..., refresh_token=...).
Run this module directly to go through the device login once.
"""

import logging
import time
from pathlib import Path

import requests

from config import settings

logger = logging.getLogger(__name__)


class CopilotError(Exception):
    """Authentication or chat request failure."""


class CopilotClient:
    CLIENT_ID = "Iv1.b507a08c87ecfe98"
    HEADERS = {
        "User-Agent": "GitHubCopilotChat/0.32.4",
        "Editor-Version": "vscode/1.105.1",
        "Editor-Plugin-Version": "copilot-chat/0.32.4",
        "Copilot-Integration-Id": "vscode-chat",
    }
    TIMEOUT = 60

    def __init__(self, enterprise_url=None, env_file=None, model=None):
        self.domain = self._normalize_domain(enterprise_url)
        self.env_file = Path(env_file or settings.copilot_env_file)
        self.model = model or settings.copilot_model
        self.access_token = None
        self.refresh_token = None
        self.token_expires = 0

        if enterprise_url:
            self.base_url = f"https://copilot-api.{self.domain}"
        else:
            self.base_url = "https://api.githubcopilot.com"

        self.device_code_url = f"https://{self.domain}/login/device/code"
        self.access_token_url = f"https://{self.domain}/login/oauth/access_token"
        self.copilot_api_key_url = f"https://api.{self.domain}/copilot_internal/v2/token"

        self._load_tokens()

    @staticmethod
    def _normalize_domain(url):
        if not url:
            return "github.com"
        return url.replace("https://", "").replace("http://", "").rstrip("/")

    def _load_tokens(self):
        """Read tokens from the env file, if there is one."""
        if not self.env_file.exists():
            logger.warning("No Copilot token file at %s", self.env_file)
            return
        for line in self.env_file.read_text().splitlines():
            key, _, value = line.partition("=")
            value = value.strip().strip('"')
            if key == "access_token":
                self.access_token = value
            elif key == "refresh_token":
                self.refresh_token = value
        # force a refresh on first use
        self.token_expires = 0
        logger.info("Loaded Copilot tokens from %s", self.env_file)

    def _save_tokens(self):
        self.env_file.write_text(
            f'access_token="{self.access_token}"\nrefresh_token="{self.refresh_token}"\n'
        )
        logger.info("Saved Copilot tokens to %s", self.env_file)

    def authenticate(self):
        """Interactive device-flow login."""
        json_headers = {"Accept": "application/json", "Content-Type": "application/json"}
        response = requests.post(
            self.device_code_url,
            headers=json_headers,
            json={"client_id": self.CLIENT_ID, "scope": "read:user"},
            timeout=self.TIMEOUT,
        )
        if not response.ok:
            raise CopilotError("Failed to initiate device authorization")
        device = response.json()

        print(f"\nPlease visit: {device['verification_uri']}")
        print(f"Enter code: {device['user_code']}\n")

        while True:
            time.sleep(device["interval"])
            token_response = requests.post(
                self.access_token_url,
                headers=json_headers,
                json={
                    "client_id": self.CLIENT_ID,
                    "device_code": device["device_code"],
                    "grant_type": "urn:ietf:params:oauth:grant-type:device_code",
                },
                timeout=self.TIMEOUT,
            )
            if not token_response.ok:
                continue

            data = token_response.json()
            if "access_token" in data:
                self.refresh_token = data["access_token"]
                self._refresh_copilot_token()
                return True
            if data.get("error") == "authorization_pending":
                continue
            if "error" in data:
                raise CopilotError(f"Authentication failed: {data['error']}")

    def _refresh_copilot_token(self):
        if not self.refresh_token:
            raise CopilotError("No refresh token available. Run `python copilot.py` to log in.")

        try:
            response = requests.get(
                self.copilot_api_key_url,
                headers={
                    "Accept": "application/json",
                    "Authorization": f"Bearer {self.refresh_token}",
                    **self.HEADERS,
                },
                timeout=self.TIMEOUT,
            )
        except requests.RequestException as e:
            raise CopilotError(f"Failed to get Copilot token: {e}") from e
        if not response.ok:
            raise CopilotError(
                f"Failed to get Copilot token: {response.status_code} - {response.text}"
            )

        token_data = response.json()
        self.access_token = token_data["token"]
        self.token_expires = token_data["expires_at"] * 1000
        self._save_tokens()

    def _ensure_token_valid(self):
        if not self.access_token or self.token_expires < time.time() * 1000:
            self._refresh_copilot_token()

    def chat(self, message=None, messages=None, model=None, temperature=0.1):
        """
        Send a chat completion request.

        Returns the assistant message dict ({"role": ..., "content": ...}).
        """
        if messages is None:
            if not message:
                raise ValueError("Must provide 'message' or 'messages'")
            messages = [{"role": "user", "content": message}]

        self._ensure_token_valid()
        headers = {
            **self.HEADERS,
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Openai-Intent": "conversation-edits",
            "X-Initiator": "user",
        }
        payload = {
            "messages": messages,
            "model": model or self.model,
            "stream": False,
            "temperature": temperature,
            "top_p": 1,
            "n": 1,
        }

        try:
            response = requests.post(
                f"{self.base_url}/chat/completions",
                headers=headers,
                json=payload,
                timeout=self.TIMEOUT,
            )
        except requests.RequestException as e:
            raise CopilotError(f"API request failed: {e}") from e

        if not response.ok:
            raise CopilotError(f"API request failed: {response.status_code} - {response.text}")
        return response.json()["choices"][0]["message"]


if __name__ == "__main__":
    logging.basicConfig(level=settings.log_level)
    client = CopilotClient()
    if not client.refresh_token:
        client.authenticate()
    print(client.chat("Reply with OK.").get("content"))
