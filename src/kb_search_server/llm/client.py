from typing import List, Dict, Any, Optional
import httpx
from ..config import settings

class LLMClient:
    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if api_key is None and settings.llm_api_key is not None:
            api_key = settings.llm_api_key.get_secret_value()
        self.api_key = api_key
        self.model = model or settings.llm_model
        self.base_url = base_url or settings.llm_base_url
        self._transport = transport

    async def chat(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.2,
    ) -> Dict[str, Any]:
        """
        Returns the raw message dict from the chat completions API, e.g.:
        {
            "role": "assistant",
            "content": "..."
        }
        """
        payload = {
            "model": self.model,
            "messages": [{"role": "system", "content": system_prompt}] + messages,
            "temperature": temperature,
        }

        async with httpx.AsyncClient(timeout=60, transport=self._transport) as client:
            resp = await client.post(
                self.base_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        resp.raise_for_status()
        data = resp.json()
        return data["choices"][0]["message"]
