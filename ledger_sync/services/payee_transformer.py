import json
import logging
from typing import Dict, List, Optional
import httpx

from ..config import PayeeTransformationConfig

logger = logging.getLogger(__name__)

PROMPT = """
You are a model trained to clean up bank account transaction payees. You will
receive a list of payees as they appear in bank statements, one per line, and
you will return a cleaned up, human-readable version of each payee. Return a
JSON object mapping every original payee name to its new name. Keep the new
names clear and concise and omit unnecessary details: "AMAZON.COM/BILLWA"
becomes "Amazon", "Amzn Mktp US*1234567890" becomes "Amazon". If you do not
know the payee, map it to "Unknown". If there is no list, return {}. Never
return anything that is not a valid JSON object.
""".strip()


class PayeeTransformer:
    """Client for normalising payee names via an OpenAI-compatible chat API."""

    def __init__(
        self,
        config: PayeeTransformationConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.model = config.openai_model
        self.base_url = config.base_url.rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {config.openai_api_key}",
            "Content-Type": "application/json"
        }
        self.transport = transport
        self._memo: Dict[str, str] = {}

    async def _request(self, method: str, endpoint: str, json_data: dict = None) -> dict:
        """Make an authenticated request to the chat API."""
        async with httpx.AsyncClient(transport=self.transport) as client:
            response = await client.request(
                method,
                f"{self.base_url}{endpoint}",
                headers=self.headers,
                json=json_data,
                timeout=60.0
            )
            response.raise_for_status()
            return response.json()

    async def transform_payees(self, names: List[str]) -> Optional[Dict[str, str]]:
        """
        Map raw payee names to cleaned up ones.

        Names already transformed during this run are answered from memory.

        Returns:
            Mapping of raw to clean names, or None if the API call failed or
            returned something other than a JSON object of strings
        """
        pending = [name for name in dict.fromkeys(names) if name not in self._memo]

        if pending:
            try:
                data = await self._request(
                    "POST",
                    "/chat/completions",
                    json_data={
                        "model": self.model,
                        "temperature": 0,
                        "messages": [
                            {"role": "system", "content": PROMPT},
                            {"role": "user", "content": "\n".join(pending)},
                        ],
                    },
                )
                content = data["choices"][0]["message"]["content"]
                transformed = json.loads(content)
            except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
                logger.warning(f"Payee transformation request failed: {e}")
                return None

            if not isinstance(transformed, dict) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in transformed.items()
            ):
                logger.warning("Payee transformation returned an unexpected payload")
                return None

            self._memo.update(transformed)

        return {name: self._memo[name] for name in names if name in self._memo}
