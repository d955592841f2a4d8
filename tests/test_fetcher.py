import asyncio
import contextlib

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from mcbuilder.core.artifacts.fetcher import Fetcher, FetchJob
from mcbuilder.core.artifacts.verifier import DigestSet
from mcbuilder.core.config import FetchPolicy
from mcbuilder.core.errors import FetchError, IntegrityError
from mcbuilder.core.models import Artifact
from tests.conftest import MOD_JAR, SERVER_JAR, sha1, sha256


@pytest.fixture
def fetcher(session):
    return Fetcher(session, concurrency=2)


class SlowHost:
    """Sends half a body, then stalls until released or `stall` runs out."""

    def __init__(self):
        self.stall = 0.0
        self.started = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.release = asyncio.Event()

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/slow/{name}", self._serve)
        return app

    async def _serve(self, request):
        self.started += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        resp = web.StreamResponse()
        await resp.prepare(request)
        await resp.write(b"first half ")
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self.release.wait(), self.stall)
        # counted out before the client can see the end of the body
        self.in_flight -= 1
        await resp.write(b"second half")
        await resp.write_eof()
        return resp


@pytest_asyncio.fixture
async def slow():
    host = SlowHost()
    server = TestServer(host.app())
    await server.start_server()
    host.url = lambda name: str(server.make_url(f"/slow/{name}"))
    yield host
    host.release.set()
    await server.close()


async def wait_until(condition, timeout=5.0):
    for _ in range(int(timeout / 0.01)):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition never became true")


class TestDigestSet:
    def test_all_declared_digests_checked(self):
        digests = DigestSet({"sha1": sha1(b"abc"), "sha256": "0" * 64})
        digests.update(b"abc")
        with pytest.raises(IntegrityError) as exc_info:
            digests.verify("https://example.com/a")
        assert exc_info.value.algorithm == "sha256"
        assert exc_info.value.transient is False

    def test_unknown_algorithm(self):
        with pytest.raises(ValueError):
            DigestSet({"crc32": "00"})


class TestFetch:
    @pytest.mark.asyncio
    async def test_verified_download(self, fetcher, upstream, tmp_path):
        artifact = Artifact(
            url=upstream.url("/files/server-1.19.3.jar"),
            digests={"sha1": sha1(SERVER_JAR), "sha256": sha256(SERVER_JAR)},
        )
        dest = tmp_path / "out" / "server.jar"
        await fetcher.fetch(artifact, dest)
        assert dest.read_bytes() == SERVER_JAR
        assert [p.name for p in dest.parent.iterdir()] == ["server.jar"]

    @pytest.mark.asyncio
    async def test_no_digest_is_accepted(self, fetcher, upstream, tmp_path):
        dest = tmp_path / "mod.jar"
        await fetcher.fetch(Artifact(url=upstream.url("/files/mod.jar")), dest)
        assert dest.read_bytes() == MOD_JAR

    @pytest.mark.asyncio
    async def test_mismatch_leaves_nothing_behind(self, fetcher, upstream, tmp_path):
        artifact = Artifact(url=upstream.url("/files/server-1.19.3.jar"), digests={"sha1": "0" * 40})
        dest = tmp_path / "server.jar"
        with pytest.raises(IntegrityError):
            await fetcher.fetch(artifact, dest)
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_404_is_permanent(self, fetcher, upstream, tmp_path):
        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(Artifact(url=upstream.url("/files/missing.jar")), tmp_path / "x")
        assert exc_info.value.transient is False

    @pytest.mark.asyncio
    async def test_5xx_is_transient(self, fetcher, upstream, tmp_path):
        upstream.fail["/files/mod.jar"] = 502
        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(Artifact(url=upstream.url("/files/mod.jar")), tmp_path / "x")
        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_unreachable_host_is_transient(self, fetcher, tmp_path):
        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(Artifact(url="http://127.0.0.1:9/nothing"), tmp_path / "x")
        assert exc_info.value.transient is True


class TestFetchAll:
    @pytest.mark.asyncio
    async def test_fetches_every_job(self, fetcher, upstream, tmp_path):
        jobs = [
            FetchJob(Artifact(url=upstream.url("/files/server-1.19.3.jar")), tmp_path / "server.jar"),
            FetchJob(Artifact(url=upstream.url("/files/mod.jar")), tmp_path / "mods" / "mod.jar", optional=True),
        ]
        report = await fetcher.fetch_all(jobs)
        assert len(report.fetched) == 2
        assert report.skipped == []
        assert (tmp_path / "mods" / "mod.jar").exists()

    @pytest.mark.asyncio
    async def test_fail_fast_on_optional(self, fetcher, upstream, tmp_path):
        jobs = [FetchJob(Artifact(url=upstream.url("/files/missing.jar")), tmp_path / "m", optional=True)]
        with pytest.raises(FetchError):
            await fetcher.fetch_all(jobs)

    @pytest.mark.asyncio
    async def test_skip_optional_policy(self, session, upstream, tmp_path):
        fetcher = Fetcher(session, policy=FetchPolicy.skip_optional)
        jobs = [
            FetchJob(Artifact(url=upstream.url("/files/server-1.19.3.jar")), tmp_path / "server.jar"),
            FetchJob(Artifact(url=upstream.url("/files/missing.jar")), tmp_path / "m.jar", optional=True),
        ]
        report = await fetcher.fetch_all(jobs)
        assert [j.destination.name for j in report.skipped] == ["m.jar"]
        assert [j.destination.name for j in report.fetched] == ["server.jar"]

    @pytest.mark.asyncio
    async def test_skip_optional_never_skips_integrity_errors(self, session, upstream, tmp_path):
        fetcher = Fetcher(session, policy=FetchPolicy.skip_optional)
        jobs = [
            FetchJob(
                Artifact(url=upstream.url("/files/mod.jar"), digests={"md5": "0" * 32}),
                tmp_path / "m.jar",
                optional=True,
            )
        ]
        with pytest.raises(IntegrityError):
            await fetcher.fetch_all(jobs)

    @pytest.mark.asyncio
    async def test_empty(self, fetcher):
        report = await fetcher.fetch_all([])
        assert report.fetched == [] and report.skipped == []

    @pytest.mark.asyncio
    async def test_failure_cancels_the_rest(self, session, upstream, tmp_path):
        fetcher = Fetcher(session, concurrency=1)
        jobs = [
            FetchJob(
                Artifact(url=upstream.url("/files/mod.jar"), digests={"sha256": "0" * 64}),
                tmp_path / "bad.jar",
            )
        ] + [
            FetchJob(Artifact(url=upstream.url("/files/server-1.19.3.jar")), tmp_path / f"s{i}.jar")
            for i in range(5)
        ]
        with pytest.raises(IntegrityError):
            await fetcher.fetch_all(jobs)
        assert upstream.fetch_hits() < len(jobs)
        assert not (tmp_path / "bad.jar").exists()


class TestTimeoutsAndCancellation:
    @pytest.mark.asyncio
    async def test_stalled_download_times_out_as_transient(self, session, slow, tmp_path):
        slow.stall = 10.0
        fetcher = Fetcher(session, fetch_timeout=0.3)
        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(Artifact(url=slow.url("mod.jar")), tmp_path / "mods" / "mod.jar")
        assert exc_info.value.transient is True
        assert list((tmp_path / "mods").iterdir()) == []

    @pytest.mark.asyncio
    async def test_overall_build_timeout_cancels_in_flight_fetches(self, session, slow, tmp_path):
        slow.stall = 10.0
        fetcher = Fetcher(session, concurrency=2, fetch_timeout=30, build_timeout=0.3)
        jobs = [FetchJob(Artifact(url=slow.url(f"m{i}.jar")), tmp_path / "mods" / f"m{i}.jar") for i in range(3)]
        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch_all(jobs)
        assert exc_info.value.transient is True
        assert "overall timeout" in str(exc_info.value)
        assert slow.started == 2
        assert list((tmp_path / "mods").iterdir()) == []

    @pytest.mark.asyncio
    async def test_cancelled_batch_removes_partial_files(self, session, slow, tmp_path):
        slow.stall = 10.0
        fetcher = Fetcher(session, concurrency=2)
        mods = tmp_path / "mods"
        jobs = [FetchJob(Artifact(url=slow.url(f"m{i}.jar")), mods / f"m{i}.jar") for i in range(2)]
        task = asyncio.create_task(fetcher.fetch_all(jobs))
        await wait_until(lambda: mods.exists() and len(list(mods.iterdir())) == 2)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert list(mods.iterdir()) == []

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, session, slow, tmp_path):
        slow.stall = 0.1
        fetcher = Fetcher(session, concurrency=2)
        jobs = [FetchJob(Artifact(url=slow.url(f"m{i}.jar")), tmp_path / f"m{i}.jar") for i in range(6)]
        report = await fetcher.fetch_all(jobs)
        assert len(report.fetched) == 6
        assert slow.started == 6
        assert slow.max_in_flight == 2
        assert (tmp_path / "m0.jar").read_bytes() == b"first half second half"
