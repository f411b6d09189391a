import json
import tempfile
import unittest
from pathlib import Path

import httpx

from skillhub.client import SkillhubError, SkillhubHTTPError
from skillhub.vectors import HttpEmbedder, LocalVectorIndex, VectorRecord


class TestHttpEmbedder(unittest.IsolatedAsyncioTestCase):
    async def test_posts_openai_compatible_request(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"data": [{"index": 1, "embedding": [0.0, 1.0]}, {"index": 0, "embedding": [1.0, 0.0]}]},
            )

        embedder = HttpEmbedder(
            base_url="https://embed.example.com/v1/",
            model="m-1",
            api_key="sk-test",
            http=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        try:
            vectors = await embedder.embed(["first", "second"])
        finally:
            await embedder.aclose()

        self.assertEqual(vectors, [[1.0, 0.0], [0.0, 1.0]])
        self.assertEqual(str(seen[0].url), "https://embed.example.com/v1/embeddings")
        self.assertEqual(seen[0].headers["authorization"], "Bearer sk-test")
        self.assertEqual(json.loads(seen[0].content), {"model": "m-1", "input": ["first", "second"]})

    async def test_error_status_is_surfaced(self) -> None:
        embedder = HttpEmbedder(
            http=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(429, text="slow down")))
        )
        try:
            with self.assertRaises(SkillhubHTTPError) as ctx:
                await embedder.embed(["x"])
        finally:
            await embedder.aclose()
        self.assertEqual(ctx.exception.status_code, 429)

    async def test_vector_count_mismatch_is_an_error(self) -> None:
        embedder = HttpEmbedder(
            http=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"data": []})))
        )
        try:
            with self.assertRaises(SkillhubError):
                await embedder.embed(["x"])
        finally:
            await embedder.aclose()


    async def test_non_json_body_is_an_error(self) -> None:
        embedder = HttpEmbedder(
            http=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>")))
        )
        try:
            with self.assertRaises(SkillhubError) as ctx:
                await embedder.embed(["x"])
        finally:
            await embedder.aclose()
        self.assertIn("not valid JSON", str(ctx.exception))


class TestLocalVectorIndex(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.index = LocalVectorIndex(Path(self._td.name) / "vectors.json")

    def tearDown(self) -> None:
        self._td.cleanup()

    async def test_query_ranks_by_similarity_and_filters(self) -> None:
        await self.index.upsert(
            [
                VectorRecord("pdf", (1.0, 0.0), {"type": "skill", "description": "pdf"}),
                VectorRecord("xlsx", (0.6, 0.8), {"type": "skill", "description": "xlsx"}),
                VectorRecord("note", (1.0, 0.0), {"type": "note"}),
            ]
        )
        matches = await self.index.query([1.0, 0.1], top_k=10, filter={"type": "skill"})
        self.assertEqual([m.id for m in matches], ["pdf", "xlsx"])
        self.assertEqual(matches[0].metadata["description"], "pdf")  # type: ignore[index]

    async def test_upsert_replaces_and_delete_removes(self) -> None:
        await self.index.upsert([VectorRecord("pdf", (1.0, 0.0), {"v": 1})])
        await self.index.upsert([VectorRecord("pdf", (0.0, 1.0), {"v": 2})])
        matches = await self.index.query([0.0, 1.0], top_k=10)
        self.assertEqual(len(matches), 1)
        self.assertEqual(matches[0].metadata, {"v": 2})

        await self.index.delete_by_ids(["pdf", "missing"])
        self.assertEqual(await self.index.query([0.0, 1.0], top_k=10), [])

    async def test_top_k_limits_results(self) -> None:
        await self.index.upsert([VectorRecord(f"s{i}", (1.0, float(i)), {}) for i in range(12)])
        self.assertEqual(len(await self.index.query([1.0, 1.0], top_k=10)), 10)

    async def test_unreadable_file_is_not_overwritten(self) -> None:
        self.index.path.write_text('{"records": {"pdf": ', encoding="utf-8")

        with self.assertRaises(SkillhubError):
            await self.index.upsert([VectorRecord("xlsx", (1.0, 0.0), {})])
        with self.assertRaises(SkillhubError):
            await self.index.query([1.0, 0.0], top_k=10)
        self.assertEqual(self.index.path.read_text(encoding="utf-8"), '{"records": {"pdf": ')


if __name__ == "__main__":
    unittest.main()
