import asyncio
import tempfile
import unittest
from pathlib import Path

from skillhub.client import DescriptorMissingError, InvalidReferenceError, NoSkillFoundError, SkillhubError
from skillhub.indexer import SkillIndexer
from skillhub.manifest import MANIFEST_KEY
from skillhub.manager import SkillInstalled, SkillManager, SkillsToChoose
from skillhub.stores import FileBlobStore, MemoryBlobStore

from _fakes import FakeEmbedder, FakeGitHub, FakeVectorIndex, keys_under, make_manager

PDF_SKILL = "# PDF tools\nExtract text and tables from PDF files.\n"


class _LostResponseIndex(FakeVectorIndex):
    """Applies the next upsert, then fails as if the response never arrived."""

    def __init__(self) -> None:
        super().__init__()
        self.lose_next_response = False

    async def upsert(self, records):
        await super().upsert(records)
        if self.lose_next_response:
            self.lose_next_response = False
            raise RuntimeError("response lost")


class _SlowEmbedder(FakeEmbedder):
    async def embed(self, texts):
        await asyncio.sleep(1)
        return await super().embed(texts)


class TestAddSkill(unittest.IsolatedAsyncioTestCase):
    async def asyncTearDown(self) -> None:
        await self.manager.aclose()

    async def test_single_marker_installs_artifacts_record_and_manifest(self) -> None:
        gh = FakeGitHub({"README.md": "repo", "pdf/SKILL.md": PDF_SKILL, "pdf/scripts/extract.py": "print('x')"})
        self.manager, store, embedder, index = make_manager(gh)

        outcome = await self.manager.add_skill("acme/skills")

        self.assertIsInstance(outcome, SkillInstalled)
        self.assertEqual(outcome.name, "pdf")
        self.assertEqual(sorted(await keys_under(store, "skills/pdf/")), ["skills/pdf/SKILL.md", "skills/pdf/scripts/extract.py"])
        self.assertEqual(list(index.records), ["pdf"])
        record = index.records["pdf"]
        self.assertEqual(record.metadata["type"], "skill")
        self.assertEqual(record.metadata["url"], "https://github.com/acme/skills")
        self.assertEqual(record.metadata["path"], "pdf")
        self.assertEqual(embedder.calls, [[PDF_SKILL]])

        skills = await self.manager.list_skills()
        self.assertEqual([(s.name, s.summary, s.path) for s in skills], [("pdf", "PDF tools", "pdf")])

    async def test_load_returns_descriptor_text(self) -> None:
        body = "# Big\n" + ("lorem ipsum " * 300)
        gh = FakeGitHub({"big/SKILL.md": body})
        self.manager, _, embedder, index = make_manager(gh)

        await self.manager.add_skill("https://github.com/acme/skills/tree/main/big")

        loaded = await self.manager.load_skill("big")
        self.assertEqual(loaded, body)
        self.assertEqual(embedder.calls[0][0], body[:1000])
        self.assertEqual(index.records["big"].metadata["description"], body[:200])

    async def test_root_descriptor_installs_whole_repository_under_repo_name(self) -> None:
        gh = FakeGitHub({"SKILL.md": "# Root skill", "lib/helper.py": "x"}, repo="my-skill")
        self.manager, store, _, _ = make_manager(gh)

        outcome = await self.manager.add_skill("acme/my-skill")

        self.assertEqual(outcome.name, "my-skill")  # type: ignore[union-attr]
        self.assertEqual(
            sorted(await keys_under(store, "skills/my-skill/")),
            ["skills/my-skill/SKILL.md", "skills/my-skill/lib/helper.py"],
        )

    async def test_zero_markers_writes_nothing(self) -> None:
        gh = FakeGitHub({"README.md": "no skills here"})
        self.manager, store, embedder, index = make_manager(gh)

        with self.assertRaises(NoSkillFoundError):
            await self.manager.add_skill("acme/skills")

        self.assertEqual(await keys_under(store, ""), [])
        self.assertEqual(index.records, {})
        self.assertEqual(embedder.calls, [])

    async def test_two_markers_without_subpath_returns_candidates(self) -> None:
        gh = FakeGitHub({"pdf/SKILL.md": PDF_SKILL, "xlsx/SKILL.md": "# XLSX"})
        self.manager, store, _, index = make_manager(gh)

        outcome = await self.manager.add_skill("acme/skills")

        self.assertEqual(outcome, SkillsToChoose(candidates=("pdf", "xlsx"), url="https://github.com/acme/skills"))
        self.assertEqual(await keys_under(store, ""), [])
        self.assertEqual(index.records, {})

    async def test_subpath_disambiguates(self) -> None:
        gh = FakeGitHub({"pdf/SKILL.md": PDF_SKILL, "xlsx/SKILL.md": "# XLSX"})
        self.manager, store, _, _ = make_manager(gh)

        outcome = await self.manager.add_skill("acme/skills/xlsx")

        self.assertEqual(outcome.name, "xlsx")  # type: ignore[union-attr]
        self.assertEqual(await keys_under(store, "skills/pdf/"), [])

    async def test_content_is_fetched_from_fallback_branch(self) -> None:
        gh = FakeGitHub({"pdf/SKILL.md": PDF_SKILL}, branch="master")
        self.manager, store, _, _ = make_manager(gh)

        await self.manager.add_skill("acme/skills")

        self.assertIsNotNone(await store.get("skills/pdf/SKILL.md"))
        content_refs = {r.url.params.get("ref") for r in gh.requests if "/contents/" in r.url.path}
        self.assertEqual(content_refs, {"master"})

    async def test_missing_optional_file_is_skipped(self) -> None:
        gh = FakeGitHub({"pdf/SKILL.md": PDF_SKILL, "pdf/big.bin": b"\x00" * 10})
        gh.missing.add("pdf/big.bin")
        self.manager, store, _, _ = make_manager(gh)

        outcome = await self.manager.add_skill("acme/skills")

        self.assertEqual(outcome.files, ("skills/pdf/SKILL.md",))  # type: ignore[union-attr]
        self.assertEqual(await keys_under(store, "skills/pdf/"), ["skills/pdf/SKILL.md"])

    async def test_missing_descriptor_rolls_back_every_artifact(self) -> None:
        gh = FakeGitHub({"pdf/SKILL.md": PDF_SKILL, "pdf/a.py": "a", "pdf/b.py": "b"})
        gh.missing.add("pdf/SKILL.md")
        self.manager, store, embedder, index = make_manager(gh)

        with self.assertRaises(DescriptorMissingError):
            await self.manager.add_skill("acme/skills")

        self.assertEqual(await keys_under(store, ""), [])
        self.assertEqual(index.records, {})
        self.assertEqual(embedder.calls, [])

    async def test_transport_failure_waits_for_all_fetches_then_rolls_back(self) -> None:
        gh = FakeGitHub({"pdf/SKILL.md": PDF_SKILL, "pdf/a.py": "a", "pdf/z.py": "z"})
        gh.broken.add("pdf/a.py")
        self.manager, store, _, _ = make_manager(gh)

        with self.assertRaises(SkillhubError):
            await self.manager.add_skill("acme/skills")

        self.assertEqual(await keys_under(store, ""), [])

    async def test_embedding_failure_rolls_back_artifacts(self) -> None:
        gh = FakeGitHub({"pdf/SKILL.md": PDF_SKILL, "pdf/a.py": "a"})
        self.manager, store, embedder, index = make_manager(gh)
        embedder.fail = True

        with self.assertRaises(RuntimeError):
            await self.manager.add_skill("acme/skills")

        self.assertEqual(await keys_under(store, ""), [])
        self.assertEqual(index.records, {})

    async def test_manifest_failure_rolls_back_index_and_artifacts(self) -> None:
        gh = FakeGitHub({"pdf/SKILL.md": PDF_SKILL})
        self.manager, store, _, index = make_manager(gh)

        async def broken_upsert(entry):
            raise SkillhubError("manifest store offline")

        self.manager.manifest.upsert = broken_upsert  # type: ignore[method-assign]

        with self.assertRaises(SkillhubError):
            await self.manager.add_skill("acme/skills")

        self.assertEqual(await keys_under(store, "skills/"), [])
        self.assertEqual(index.records, {})

    async def test_reinstall_replaces_entry_and_prunes_stale_files(self) -> None:
        gh = FakeGitHub({"pdf/SKILL.md": "# PDF v1", "pdf/old.py": "old"})
        self.manager, store, _, index = make_manager(gh)
        await self.manager.add_skill("acme/skills")

        gh.files = {"pdf/SKILL.md": b"# PDF v2", "pdf/new.py": b"new"}
        await self.manager.add_skill("https://github.com/acme/skills/tree/main/pdf")

        skills = await self.manager.list_skills()
        self.assertEqual(len(skills), 1)
        self.assertEqual(skills[0].summary, "PDF v2")
        self.assertEqual(skills[0].source_url, "https://github.com/acme/skills/tree/main/pdf")
        self.assertEqual(list(index.records), ["pdf"])
        self.assertEqual(index.records["pdf"].metadata["description"], "# PDF v2")
        self.assertEqual(sorted(await keys_under(store, "skills/pdf/")), ["skills/pdf/SKILL.md", "skills/pdf/new.py"])

    async def test_failed_reinstall_restores_previous_install(self) -> None:
        gh = FakeGitHub({"pdf/SKILL.md": "# PDF v1", "pdf/a.py": "v1"})
        self.manager, store, embedder, index = make_manager(gh)
        await self.manager.add_skill("acme/skills")

        gh.files = {"pdf/SKILL.md": b"# PDF v2", "pdf/a.py": b"v2", "pdf/b.py": b"v2"}
        embedder.fail = True
        with self.assertRaises(RuntimeError):
            await self.manager.add_skill("acme/skills")

        self.assertEqual(await self.manager.load_skill("pdf"), "# PDF v1")
        a = await store.get("skills/pdf/a.py")
        self.assertEqual(a.body, b"v1")  # type: ignore[union-attr]
        self.assertIsNone(await store.get("skills/pdf/b.py"))
        self.assertEqual(index.records["pdf"].metadata["description"], "# PDF v1")

    async def test_invalid_references(self) -> None:
        gh = FakeGitHub({})
        self.manager, _, _, _ = make_manager(gh)
        with self.assertRaises(InvalidReferenceError):
            await self.manager.add_skill("")
        with self.assertRaises(InvalidReferenceError):
            await self.manager.add_skill("https://gitlab.com/acme/skills")
        self.assertEqual(gh.requests, [])

    async def test_concurrent_installs_of_same_name_leave_one_entry(self) -> None:
        gh = FakeGitHub({"pdf/SKILL.md": PDF_SKILL, "pdf/a.py": "a"})
        self.manager, _, _, index = make_manager(gh)

        await asyncio.gather(self.manager.add_skill("acme/skills"), self.manager.add_skill("acme/skills/pdf"))

        self.assertEqual([s.name for s in await self.manager.list_skills()], ["pdf"])
        self.assertEqual(list(index.records), ["pdf"])
        self.assertEqual(self.manager._locks, {})

    async def test_applied_but_failed_upsert_is_rolled_back(self) -> None:
        gh = FakeGitHub({"pdf/SKILL.md": "# PDF"})
        index = _LostResponseIndex()
        index.lose_next_response = True
        store = MemoryBlobStore()
        self.manager = SkillManager(
            github=gh.client(), store=store, indexer=SkillIndexer(FakeEmbedder(), index, timeout_s=5.0)
        )

        with self.assertRaises(RuntimeError):
            await self.manager.add_skill("acme/skills")

        self.assertEqual(index.records, {})
        self.assertEqual(await self.manager.search_skills("pdf"), [])
        self.assertIsNone(await self.manager.load_skill("pdf"))

    async def test_applied_but_failed_upsert_on_reinstall_restores_previous_record(self) -> None:
        gh = FakeGitHub({"pdf/SKILL.md": "# PDF v1"})
        index = _LostResponseIndex()
        self.manager = SkillManager(
            github=gh.client(), store=MemoryBlobStore(), indexer=SkillIndexer(FakeEmbedder(), index, timeout_s=5.0)
        )
        await self.manager.add_skill("acme/skills")

        gh.files = {"pdf/SKILL.md": b"# PDF v2"}
        index.lose_next_response = True
        with self.assertRaises(RuntimeError):
            await self.manager.add_skill("acme/skills")

        self.assertEqual(index.records["pdf"].metadata["description"], "# PDF v1")
        self.assertEqual(await self.manager.load_skill("pdf"), "# PDF v1")

    async def test_embedding_timeout_is_descriptive(self) -> None:
        gh = FakeGitHub({"pdf/SKILL.md": PDF_SKILL})
        self.manager, store, _, index = make_manager(gh)
        self.manager.indexer = SkillIndexer(_SlowEmbedder(), index, timeout_s=0.05)

        with self.assertRaises(SkillhubError) as ctx:
            await self.manager.add_skill("acme/skills")

        self.assertEqual(str(ctx.exception), "Embedding call timed out after 0.05s")
        self.assertEqual(await keys_under(store, ""), [])

    async def test_folder_named_like_the_manifest_is_rejected(self) -> None:
        gh = FakeGitHub({"manifest.json/SKILL.md": PDF_SKILL})
        self.manager, store, embedder, _ = make_manager(gh)

        with self.assertRaises(InvalidReferenceError):
            await self.manager.add_skill("acme/skills")
        with self.assertRaises(InvalidReferenceError):
            await self.manager.delete_skill("manifest.json")

        self.assertEqual(await keys_under(store, ""), [])
        self.assertEqual(embedder.calls, [])

    async def test_file_store_uninstall_removes_tmp_named_artifacts(self) -> None:
        gh = FakeGitHub({"pdf/SKILL.md": PDF_SKILL, "pdf/cache.tmp": "cached"})
        with tempfile.TemporaryDirectory() as td:
            store = FileBlobStore(Path(td) / "blobs")
            self.manager = SkillManager(
                github=gh.client(),
                store=store,
                indexer=SkillIndexer(FakeEmbedder(), FakeVectorIndex(), timeout_s=5.0),
            )

            outcome = await self.manager.add_skill("acme/skills")
            self.assertEqual(sorted(outcome.files), ["skills/pdf/SKILL.md", "skills/pdf/cache.tmp"])  # type: ignore[union-attr]

            self.assertEqual(await self.manager.delete_skill("pdf"), 2)
            self.assertEqual(await keys_under(store, "skills/pdf/"), [])
            self.assertEqual(self.manager._locks, {})


class TestDeleteSearchLoad(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        files = {"pdf/SKILL.md": PDF_SKILL, "xlsx/SKILL.md": "# Spreadsheets\nEdit xlsx workbooks."}
        files.update({f"pdf/data/f{i:04d}.txt": str(i) for i in range(30)})
        self.gh = FakeGitHub(files)
        self.manager, self.store, self.embedder, self.index = make_manager(self.gh)
        await self.manager.add_skill("acme/skills/pdf")
        await self.manager.add_skill("acme/skills/xlsx")

    async def asyncTearDown(self) -> None:
        await self.manager.aclose()

    async def test_delete_removes_everything_for_name(self) -> None:
        original_list = self.store.list
        pages: list[str | None] = []

        async def small_pages(prefix, cursor=None, limit=1000):
            pages.append(cursor)
            return await original_list(prefix, cursor, limit=7)

        self.store.list = small_pages  # type: ignore[method-assign]

        deleted = await self.manager.delete_skill("pdf")

        self.assertEqual(deleted, 31)
        self.assertGreater(len(pages), 1)
        self.assertEqual(await keys_under(self.store, "skills/pdf/"), [])
        self.assertNotIn("pdf", self.index.records)
        self.assertEqual([s.name for s in await self.manager.list_skills()], ["xlsx"])
        self.assertIsNotNone(await self.store.get(MANIFEST_KEY))

    async def test_delete_twice_is_a_noop(self) -> None:
        await self.manager.delete_skill("pdf")
        self.assertEqual(await self.manager.delete_skill("pdf"), 0)

    async def test_delete_removes_index_record_first(self) -> None:
        order: list[str] = []
        original_delete = self.store.delete

        async def tracking_delete(keys):
            order.append("artifacts")
            await original_delete(keys)

        original_index_delete = self.index.delete_by_ids

        async def tracking_index_delete(ids):
            order.append("index")
            await original_index_delete(ids)

        self.store.delete = tracking_delete  # type: ignore[method-assign]
        self.index.delete_by_ids = tracking_index_delete  # type: ignore[method-assign]

        await self.manager.delete_skill("xlsx")
        self.assertEqual(order[0], "index")

    async def test_pagination_failure_is_surfaced(self) -> None:
        original_list = self.store.list
        calls = 0

        async def flaky(prefix, cursor=None, limit=1000):
            nonlocal calls
            calls += 1
            if calls == 2:
                raise SkillhubError("listing failed")
            return await original_list(prefix, cursor, limit=5)

        self.store.list = flaky  # type: ignore[method-assign]
        with self.assertRaises(SkillhubError):
            await self.manager.delete_skill("pdf")
        self.assertEqual(calls, 2)
        self.assertIn("pdf", [s.name for s in await self.manager.list_skills()])

    async def test_delete_rejects_path_like_names(self) -> None:
        with self.assertRaises(InvalidReferenceError):
            await self.manager.delete_skill("../pdf")

    async def test_search_ranks_by_relevance(self) -> None:
        matches = await self.manager.search_skills("xlsx workbooks")
        self.assertEqual(matches[0].id, "xlsx")
        self.assertLessEqual(len(matches), 10)
        self.assertEqual(self.embedder.calls[-1], ["xlsx workbooks"])

    async def test_search_without_query_uses_default_token(self) -> None:
        await self.manager.search_skills(None)
        self.assertEqual(self.embedder.calls[-1], ["skill"])

    async def test_load_unknown_skill_returns_none(self) -> None:
        self.assertIsNone(await self.manager.load_skill("nope"))


if __name__ == "__main__":
    unittest.main()
