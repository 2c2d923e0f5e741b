from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests

from app.services.memory_service import MemoryService, MemoryServiceError, memory_tools


def fake_response(status=200, json_data=None, text=""):
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.text = text
    response.json.return_value = json_data
    return response


@pytest.fixture
def service():
    return MemoryService("sm-key", base_url="https://sm.test/v3")


@patch("app.services.memory_service.requests.post")
def test_add_memory_uses_default_container_tag(mock_post, service):
    mock_post.return_value = fake_response(json_data={"id": "m1", "status": "queued"})

    result = service.add_memory("How to reset the router", metadata={"source": "manual"})

    assert result == {"id": "m1", "status": "queued"}
    args, kwargs = mock_post.call_args
    assert args[0] == "https://sm.test/v3/documents"
    assert kwargs["headers"]["Authorization"] == "Bearer sm-key"
    assert kwargs["json"] == {
        "content": "How to reset the router",
        "containerTags": ["pocket-senpai"],
        "metadata": {"source": "manual"},
    }


def test_add_memory_requires_content(service):
    with pytest.raises(ValueError):
        service.add_memory("   ")


@patch("app.services.memory_service.requests.post")
def test_upload_file_sends_multipart(mock_post, service):
    mock_post.return_value = fake_response(json_data={"id": "f1", "status": "queued"})

    service.upload_file("guide.pdf", b"%PDF", "application/pdf", container_tag="docs")

    kwargs = mock_post.call_args.kwargs
    assert kwargs["files"] == {"file": ("guide.pdf", b"%PDF", "application/pdf")}
    assert kwargs["data"] == {"containerTags": "docs"}


@patch("app.services.memory_service.requests.post")
def test_list_memories_defaults(mock_post, service):
    page = {"memories": [], "pagination": {"currentPage": 1, "totalPages": 0, "totalItems": 0, "limit": 10}}
    mock_post.return_value = fake_response(json_data=page)

    assert service.list_memories() == page
    assert mock_post.call_args.kwargs["json"] == {"limit": 10, "page": 1, "sort": "createdAt", "order": "desc"}


@patch("app.services.memory_service.requests.post")
def test_list_memories_filters_by_tag(mock_post, service):
    mock_post.return_value = fake_response(json_data={"memories": []})

    service.list_memories(limit=5, page=2, container_tag="docs", sort="updatedAt", order="asc")

    assert mock_post.call_args.kwargs["json"]["containerTags"] == ["docs"]


def test_list_memories_rejects_unknown_sort(service):
    with pytest.raises(ValueError):
        service.list_memories(sort="title")


@patch("app.services.memory_service.requests.post")
def test_upstream_error_raises(mock_post, service):
    mock_post.return_value = fake_response(status=403, text="forbidden")

    with pytest.raises(MemoryServiceError) as exc:
        service.add_memory("x")

    assert exc.value.status_code == 403
    assert "forbidden" in str(exc.value)


@patch("app.services.memory_service.requests.post")
def test_network_error_raises(mock_post, service):
    mock_post.side_effect = requests.exceptions.ConnectionError("down")

    with pytest.raises(MemoryServiceError):
        service.search("router")


@patch("app.services.memory_service.requests.post")
def test_search_tool_formats_results(mock_post, service):
    mock_post.return_value = fake_response(
        json_data={
            "results": [
                {"title": "Router guide", "score": 0.9, "chunks": [{"content": "Hold reset for 10s."}]},
                {"title": "FAQ", "score": 0.5, "chunks": [], "summary": "Common questions"},
            ]
        }
    )
    search = memory_tools(service)["searchMemories"]

    result = search.invoke({"informationToGet": "reset router"})

    assert result["count"] == 2
    assert result["results"][0] == {"title": "Router guide", "score": 0.9, "content": "Hold reset for 10s."}
    assert result["results"][1]["content"] == "Common questions"
    assert mock_post.call_args.kwargs["json"]["containerTags"] == ["imported"]


@patch("app.utils.retry.time.sleep")
@patch("app.services.memory_service.requests.post")
def test_search_tool_retries_then_reports_error(mock_post, mock_sleep, service):
    mock_post.side_effect = requests.exceptions.ConnectionError("down")
    search = memory_tools(service)["searchMemories"]

    result = search.invoke({"informationToGet": "reset router"})

    assert list(result) == ["error"]
    assert mock_post.call_count == 3
    assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]


def test_service_requires_key():
    with pytest.raises(ValueError):
        MemoryService("")


@pytest.mark.parametrize("status", [400, 401, 403])
@patch("app.utils.retry.time.sleep")
@patch("app.services.memory_service.requests.post")
def test_search_tool_does_not_retry_rejections(mock_post, mock_sleep, service, status):
    mock_post.return_value = fake_response(status=status, text='{"error":"unauthorized"}')
    search = memory_tools(service)["searchMemories"]

    result = search.invoke({"informationToGet": "reset router"})

    assert list(result) == ["error"]
    assert mock_post.call_count == 1
    mock_sleep.assert_not_called()


@patch("app.utils.retry.time.sleep")
@patch("app.services.memory_service.requests.post")
def test_search_tool_retries_server_errors(mock_post, mock_sleep, service):
    mock_post.side_effect = [
        fake_response(status=503, text="unavailable"),
        fake_response(json_data={"results": []}),
    ]
    search = memory_tools(service)["searchMemories"]

    result = search.invoke({"informationToGet": "reset router"})

    assert result == {"results": [], "count": 0}
    assert mock_post.call_count == 2


@pytest.mark.parametrize("status, transient", [(None, True), (429, True), (502, True), (401, False), (404, False)])
def test_error_transience(status, transient):
    assert MemoryServiceError("x", status_code=status).transient is transient
