"""Web search clients (Tavily primary, Serper fallback)."""

from animatevdo.clients.base import ProviderClient, SearchResult


class TavilyClient(ProviderClient):
    provider = "Tavily"
    base_url = "https://api.tavily.com"
    model_name = "tavily-search"

    async def search(self, query: str, max_results: int = 5) -> list[SearchResult]:
        response = await self._request(
            "POST",
            f"{self.base_url}/search",
            json={
                "api_key": self.api_key,
                "query": query,
                "search_depth": "advanced",
                "include_answer": True,
                "max_results": max_results,
            },
        )
        return [
            SearchResult(title=item.get("title", ""), url=item.get("url", ""), content=item.get("content", ""))
            for item in response.json().get("results", [])
        ]


class SerperClient(ProviderClient):
    provider = "Serper"
    base_url = "https://google.serper.dev"
    model_name = "serper-search"

    def _headers(self) -> dict[str, str]:
        return {"X-API-KEY": self.api_key or "", "Content-Type": "application/json"}

    async def search(self, query: str, max_results: int = 5) -> list[SearchResult]:
        response = await self._request(
            "POST",
            f"{self.base_url}/search",
            json={"q": query, "num": max_results},
        )
        return [
            SearchResult(title=item.get("title", ""), url=item.get("link", ""), content=item.get("snippet", ""))
            for item in response.json().get("organic", [])
        ]
