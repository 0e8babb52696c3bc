"""
Tests for the Model Store.

These tests verify:
1. An interrupted download resumes with a Range request and ends byte-identical
2. Cancellation never leaves a file at the final path
3. Failures are terminal events and never damage a completed artifact
4. Status is derived from the final and partial files
"""

from unittest.mock import patch

import pytest
import requests

from conftest import FakeResponse, collect, make_artifact
from hamorah.ai.artifacts import Complete, InProgress, NotStarted, ProgressStatus
from hamorah.ai.model_store import format_size

DATA = bytes(range(256)) * 40  # 10240 bytes


@pytest.fixture
def artifact(tmp_path):
    return make_artifact(tmp_path, name="model.bin", size=len(DATA), min_size=100)


def full_response(data=DATA, chunk=1024):
    chunks = [data[i:i + chunk] for i in range(0, len(data), chunk)]
    return FakeResponse(200, chunks, {'Content-Length': str(len(data))})


class TestDownloadResume:
    """Test resumable downloads."""

    @pytest.mark.asyncio
    async def test_interrupted_download_resumes_byte_identical(self, model_store, artifact):
        """A restart after N bytes sends Range and yields the same bytes as one full download."""
        def interrupted():
            yield DATA[:4096]
            raise requests.exceptions.ConnectionError("connection reset by peer")

        first = FakeResponse(200, interrupted, {'Content-Length': str(len(DATA))})
        second = FakeResponse(
            206,
            [DATA[4096:7000], DATA[7000:]],
            {'Content-Range': f'bytes 4096-{len(DATA) - 1}/{len(DATA)}', 'Content-Length': str(len(DATA) - 4096)},
        )

        with patch('hamorah.ai.model_store.requests.get', side_effect=[first, second]) as mock_get:
            events = await collect(model_store.download(artifact))
            assert events[-1].status == ProgressStatus.FAILED
            assert "Network error" in events[-1].reason
            assert not artifact.destination_path.exists()
            assert model_store.status(artifact) == InProgress(4096, len(DATA))

            events = await collect(model_store.download(artifact))

        assert events[-1].status == ProgressStatus.COMPLETE
        assert events[-1].fraction == 1.0
        assert artifact.destination_path.read_bytes() == DATA
        assert not artifact.temp_path.exists()
        assert mock_get.call_args_list[0].kwargs['headers'] == {}
        assert mock_get.call_args_list[1].kwargs['headers'] == {'Range': 'bytes=4096-'}
        assert mock_get.call_args_list[1].kwargs['allow_redirects'] is True

    @pytest.mark.asyncio
    async def test_server_ignoring_range_restarts(self, model_store, artifact):
        """A 200 answer to a Range request rewrites the partial file from byte 0."""
        artifact.temp_path.write_bytes(b"stale bytes from another build")

        with patch('hamorah.ai.model_store.requests.get', return_value=full_response()):
            events = await collect(model_store.download(artifact))

        assert events[-1].status == ProgressStatus.COMPLETE
        assert artifact.destination_path.read_bytes() == DATA

    @pytest.mark.asyncio
    async def test_range_not_satisfiable_finalizes_partial(self, model_store, artifact):
        """416 means the partial file already holds everything."""
        artifact.temp_path.write_bytes(DATA)

        with patch('hamorah.ai.model_store.requests.get', return_value=FakeResponse(416)):
            events = await collect(model_store.download(artifact))

        assert events[-1].status == ProgressStatus.COMPLETE
        assert artifact.destination_path.read_bytes() == DATA

    @pytest.mark.asyncio
    async def test_range_not_satisfiable_rejects_oversized_partial(self, model_store, artifact):
        """A stale partial larger than the real artifact is discarded, not renamed."""
        artifact.temp_path.write_bytes(DATA * 2)
        unsatisfiable = FakeResponse(416, headers={'Content-Range': f'bytes */{len(DATA)}'})

        with patch('hamorah.ai.model_store.requests.get', return_value=unsatisfiable):
            events = await collect(model_store.download(artifact))

        assert events[-1].status == ProgressStatus.FAILED
        assert not artifact.destination_path.exists()
        assert not artifact.temp_path.exists()


class TestDownloadProgress:
    """Test progress events."""

    @pytest.mark.asyncio
    async def test_fraction_clamped_until_complete(self, model_store, artifact):
        with patch('hamorah.ai.model_store.requests.get', return_value=full_response()):
            events = await collect(model_store.download(artifact))

        running = [e for e in events if e.status == ProgressStatus.RUNNING]
        assert len(running) == 10
        assert all(0.0 <= e.fraction <= 0.99 for e in running)
        assert [e.fraction for e in running] == sorted(e.fraction for e in running)
        assert running[-1].fraction == 0.99
        assert events[-1].fraction == 1.0
        assert sum(e.is_terminal for e in events) == 1

    @pytest.mark.asyncio
    async def test_complete_artifact_short_circuits(self, model_store, tmp_path):
        artifact = make_artifact(tmp_path, create=True)

        with patch('hamorah.ai.model_store.requests.get') as mock_get:
            events = await collect(model_store.download(artifact))

        mock_get.assert_not_called()
        assert [e.status for e in events] == [ProgressStatus.COMPLETE]


class TestDownloadCancellation:
    """Test cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_leaves_no_final_file(self, model_store, artifact):
        response = full_response()

        events = []
        with patch('hamorah.ai.model_store.requests.get', return_value=response):
            async for event in model_store.download(artifact):
                events.append(event)
                if event.status == ProgressStatus.RUNNING:
                    model_store.cancel(artifact)

        assert events[-1].status == ProgressStatus.CANCELLED
        assert events[-1].reason is None
        assert response.closed
        assert not artifact.destination_path.exists()
        assert artifact.temp_path.exists()

        state = model_store.status(artifact)
        assert isinstance(state, (NotStarted, InProgress))
        assert not state.is_complete

    def test_cancel_without_download_is_noop(self, model_store, artifact):
        model_store.cancel(artifact)
        assert not model_store.is_downloading(artifact)


class TestDownloadFailures:
    """Test that failures are terminal events."""

    @pytest.mark.asyncio
    async def test_http_error_status(self, model_store, artifact):
        with patch('hamorah.ai.model_store.requests.get', return_value=FakeResponse(404)):
            events = await collect(model_store.download(artifact))

        assert events[-1].status == ProgressStatus.FAILED
        assert "HTTP 404" in events[-1].reason
        assert events[-1].to_state().reason == events[-1].reason

    @pytest.mark.asyncio
    async def test_size_mismatch_keeps_partial_for_resume(self, model_store, artifact):
        """A short stream fails verification and is not renamed."""
        short = FakeResponse(200, [DATA[:5000]], {'Content-Length': str(len(DATA))})

        with patch('hamorah.ai.model_store.requests.get', return_value=short):
            events = await collect(model_store.download(artifact))

        assert events[-1].status == ProgressStatus.FAILED
        assert "incomplete" in events[-1].reason
        assert not artifact.destination_path.exists()
        assert artifact.temp_path.stat().st_size == 5000

    @pytest.mark.asyncio
    async def test_within_tolerance_is_accepted(self, model_store, tmp_path):
        """Servers that report a slightly different size still complete."""
        artifact = make_artifact(tmp_path, name="approx.bin", size=len(DATA) + 50)
        response = FakeResponse(200, [DATA], {})

        with patch('hamorah.ai.model_store.requests.get', return_value=response):
            events = await collect(model_store.download(artifact))

        assert events[-1].status == ProgressStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_failed_redownload_keeps_existing_file(self, model_store, artifact):
        original = b"verified" * 100
        artifact.destination_path.write_bytes(original)

        with patch('hamorah.ai.model_store.requests.get', return_value=FakeResponse(500)):
            events = await collect(model_store.download(artifact, force=True))

        assert events[-1].status == ProgressStatus.FAILED
        assert artifact.destination_path.read_bytes() == original

    @pytest.mark.asyncio
    async def test_timeout_is_failure(self, model_store, artifact):
        with patch('hamorah.ai.model_store.requests.get', side_effect=requests.exceptions.Timeout("read timed out")):
            events = await collect(model_store.download(artifact))

        assert len(events) == 1
        assert events[0].status == ProgressStatus.FAILED
        assert "timeout" in events[0].reason.lower()


class TestStatusAndDelete:
    """Test derived status and deletion."""

    def test_status_states(self, model_store, artifact):
        assert model_store.status(artifact) == NotStarted()

        artifact.temp_path.write_bytes(b"x" * 300)
        assert model_store.status(artifact) == InProgress(300, len(DATA))

        artifact.destination_path.write_bytes(DATA)
        assert model_store.status(artifact) == Complete()

    def test_truncated_final_file_is_not_present(self, model_store, artifact):
        """A final file under the plausibility threshold does not count."""
        artifact.destination_path.write_bytes(b"x" * 50)
        assert not model_store.is_present(artifact)
        assert model_store.status(artifact) == NotStarted()

    def test_delete_removes_both_files(self, model_store, artifact):
        artifact.destination_path.write_bytes(DATA)
        artifact.temp_path.write_bytes(b"partial")

        model_store.delete(artifact)

        assert not artifact.destination_path.exists()
        assert not artifact.temp_path.exists()

    def test_delete_is_idempotent(self, model_store, artifact):
        model_store.delete(artifact)
        model_store.delete(artifact)
        assert model_store.status(artifact) == NotStarted()


def test_format_size():
    assert format_size(512) == "512.0 B"
    assert format_size(669 * 1024 * 1024) == "669.0 MB"
    assert format_size(2.3 * 1024 ** 3) == "2.3 GB"
