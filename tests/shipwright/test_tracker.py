"""Tests for ADF conversion, tracker models and the Jira client."""

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from src.shipwright.tracker.adf import adf_to_text, markdown_to_adf
from src.shipwright.tracker.client import JiraAPIError, JiraClient, TransitionNotFoundError
from src.shipwright.tracker.models import TrackerComment, TrackerIssue, parse_jira_datetime


def run_async(coro):
    return asyncio.run(coro)


def _paragraph(*nodes):
    return {"type": "paragraph", "content": list(nodes)}


def _text(text, **extra):
    return {"type": "text", "text": text, **extra}


def _comment_payload(comment_id, body, created, account_id="human-1"):
    return {
        "id": comment_id,
        "author": {"accountId": account_id, "displayName": "Dana"},
        "body": {"type": "doc", "version": 1, "content": [_paragraph(_text(body))]},
        "created": created,
    }


def _issue_payload(key="PROJ-1", status="To Do", labels=None, assignee=None, comments=None):
    return {
        "key": key,
        "fields": {
            "summary": "Add health check",
            "description": {
                "type": "doc",
                "content": [_paragraph(_text("Expose "), _text("/healthz", marks=[{"type": "code"}]))],
            },
            "status": {"name": status},
            "labels": labels or [],
            "assignee": {"accountId": assignee} if assignee else None,
            "reporter": {"accountId": "human-1"},
            "comment": {"comments": comments or []},
        },
    }


class TestAdfToText:
    def test_plain_values(self):
        assert adf_to_text(None) == ""
        assert adf_to_text("already text") == "already text"

    def test_blocks(self):
        doc = {
            "type": "doc",
            "content": [
                {"type": "heading", "content": [_text("Steps")]},
                {
                    "type": "bulletList",
                    "content": [
                        {"type": "listItem", "content": [_paragraph(_text("one"))]},
                        {"type": "listItem", "content": [_paragraph(_text("two"))]},
                    ],
                },
                {"type": "codeBlock", "content": [_text("print(1)")]},
                {"type": "rule"},
                _paragraph(_text("line"), {"type": "hardBreak"}, _text("next")),
            ],
        }

        assert adf_to_text(doc) == (
            "## Steps\n\n- one\n- two\n\n```\nprint(1)\n```\n\n---\n\nline\nnext"
        )

    def test_mentions_render_their_text(self):
        doc = {
            "type": "doc",
            "content": [_paragraph({"type": "mention", "attrs": {"text": "@Dana"}}, _text(" approve"))],
        }

        assert adf_to_text(doc) == "@Dana approve"


class TestMarkdownToAdf:
    def test_paragraphs_rules_and_code(self):
        doc = markdown_to_adf("Hello\nworld\n\n---\n```\ncode line\n```")

        assert doc["type"] == "doc"
        types = [block["type"] for block in doc["content"]]
        assert types == ["paragraph", "rule", "codeBlock"]
        assert doc["content"][0]["content"][1] == {"type": "hardBreak"}
        assert doc["content"][2]["content"][0]["text"] == "code line"

    def test_inline_marks(self):
        doc = markdown_to_adf("**PR:** [#42](https://github.com/acme/web/pull/42) uses `main`")
        nodes = doc["content"][0]["content"]

        assert nodes[0] == {"type": "text", "text": "PR:", "marks": [{"type": "strong"}]}
        assert nodes[2]["marks"][0]["attrs"]["href"] == "https://github.com/acme/web/pull/42"
        assert nodes[-1] == {"type": "text", "text": "main", "marks": [{"type": "code"}]}

    def test_empty_text_still_valid_document(self):
        doc = markdown_to_adf("")

        assert doc["content"] == [{"type": "paragraph", "content": [{"type": "text", "text": " "}]}]

    def test_round_trip_to_text(self):
        text = "First paragraph\n\n**Bold** words"

        assert adf_to_text(markdown_to_adf(text)) == "First paragraph\n\nBold words"


class TestModels:
    def test_parse_jira_datetime_formats(self):
        expected = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

        assert parse_jira_datetime("2024-05-01T10:00:00.000+0000") == expected
        assert parse_jira_datetime("2024-05-01T10:00:00Z") == expected
        assert parse_jira_datetime(expected.timestamp() * 1000) == expected

    def test_issue_from_api(self):
        payload = _issue_payload(
            labels=["claude-bot"],
            assignee="bot-1",
            comments=[_comment_payload("10", "looks good", "2024-05-01T10:00:00.000+0000")],
        )

        issue = TrackerIssue.from_api(payload)

        assert issue.key == "PROJ-1"
        assert issue.description == "Expose /healthz"
        assert issue.status == "To Do"
        assert issue.assignee_account_id == "bot-1"
        assert issue.reporter_account_id == "human-1"
        assert issue.comments[0].body == "looks good"

    def test_comment_from_api_without_author(self):
        comment = TrackerComment.from_api(
            {"id": 5, "body": "plain", "created": "2024-05-01T10:00:00.000+0000"}
        )

        assert comment.id == "5"
        assert comment.author_account_id is None


class _Router:
    """MockTransport handler keyed on (method, path)."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, method, path, *responses):
        self.routes[(method, path)] = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"errorMessages": ["not routed"]})
        payload = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(payload, httpx.Response):
            return httpx.Response(payload.status_code, content=payload.content)
        return httpx.Response(200, json=payload)

    def bodies(self, method, path):
        return [
            json.loads(r.content) for r in self.requests
            if r.method == method and r.url.path == path
        ]


def _jira(router: _Router, **kwargs) -> JiraClient:
    client = JiraClient(
        "https://example.atlassian.net",
        "bot@example.com",
        "token",
        "PROJ",
        base_delay=0,
        max_delay=0,
        **kwargs,
    )
    client._client = httpx.AsyncClient(
        base_url=client.base_url,
        headers=client._default_headers(),
        auth=client._auth(),
        transport=httpx.MockTransport(router),
    )
    return client


class TestEligibility:
    def test_label_and_status(self):
        client = JiraClient("https://x", "e", "t", "PROJ")

        assert client.is_eligible(TrackerIssue(key="PROJ-1", status="to do", labels=["claude-bot"]))
        assert not client.is_eligible(TrackerIssue(key="PROJ-1", status="Done", labels=["claude-bot"]))
        assert not client.is_eligible(TrackerIssue(key="PROJ-1", status="To Do"))

    def test_assignment_to_bot(self):
        client = JiraClient("https://x", "e", "t", "PROJ", bot_account_id="bot-1")

        assert client.is_eligible(
            TrackerIssue(key="PROJ-1", status="To Do", assignee_account_id="bot-1")
        )

    def test_urls_and_labels(self):
        client = JiraClient("https://example.atlassian.net/", "e", "t", "PROJ", bot_label="ai")

        assert client.issue_url("PROJ-1") == "https://example.atlassian.net/browse/PROJ-1"
        assert client.pending_label == "ai-pr-pending"


class TestJiraClient:
    def test_search_follows_page_tokens(self):
        router = _Router()
        router.add(
            "POST",
            "/rest/api/3/search/jql",
            {"issues": [_issue_payload("PROJ-1")], "nextPageToken": "page-2"},
            {"issues": [_issue_payload("PROJ-2")], "isLast": True},
        )
        client = _jira(router, bot_account_id="bot-1")

        issues = run_async(client.search_ready_issues())

        assert [i.key for i in issues] == ["PROJ-1", "PROJ-2"]
        first, second = router.bodies("POST", "/rest/api/3/search/jql")
        assert 'assignee = "bot-1"' in first["jql"]
        assert 'status = "To Do"' in first["jql"]
        assert "nextPageToken" not in first
        assert second["nextPageToken"] == "page-2"

    def test_done_pending_query(self):
        router = _Router()
        router.add("POST", "/rest/api/3/search/jql", {"issues": []})
        client = _jira(router)

        assert run_async(client.search_done_pending_issues()) == []
        body = router.bodies("POST", "/rest/api/3/search/jql")[0]
        assert 'labels = "claude-bot-pr-pending"' in body["jql"]
        assert 'status = "Done"' in body["jql"]

    def test_get_issue_fetches_all_comment_pages(self):
        router = _Router()
        router.add("GET", "/rest/api/3/issue/PROJ-1", _issue_payload())
        router.add(
            "GET",
            "/rest/api/3/issue/PROJ-1/comment",
            {
                "comments": [_comment_payload("1", "first", "2024-05-01T10:00:00.000+0000")],
                "total": 2,
            },
            {
                "comments": [_comment_payload("2", "second", "2024-05-01T11:00:00.000+0000")],
                "total": 2,
            },
        )
        client = _jira(router)

        issue = run_async(client.get_issue("PROJ-1"))

        assert [c.body for c in issue.comments] == ["first", "second"]
        comment_requests = [r for r in router.requests if r.url.path.endswith("/comment")]
        assert comment_requests[1].url.params["startAt"] == "1"

    def test_add_comment_posts_adf(self):
        router = _Router()
        router.add("POST", "/rest/api/3/issue/PROJ-1/comment", {"id": "99"})
        client = _jira(router)

        run_async(client.add_comment("PROJ-1", "**Plan** ready"))

        body = router.bodies("POST", "/rest/api/3/issue/PROJ-1/comment")[0]["body"]
        assert body["type"] == "doc"
        assert router.requests[0].headers["authorization"].startswith("Basic ")

    def test_transition_matches_target_status(self):
        router = _Router()
        router.add(
            "GET",
            "/rest/api/3/issue/PROJ-1/transitions",
            {
                "transitions": [
                    {"id": "11", "name": "Start work", "to": {"name": "In Progress"}},
                    {"id": "31", "name": "Finish", "to": {"name": "Done"}},
                ]
            },
        )
        router.add("POST", "/rest/api/3/issue/PROJ-1/transitions", httpx.Response(204))
        client = _jira(router)

        run_async(client.transition_issue("PROJ-1", "in progress"))

        posted = router.bodies("POST", "/rest/api/3/issue/PROJ-1/transitions")
        assert posted == [{"transition": {"id": "11"}}]

    def test_missing_transition_lists_available(self):
        router = _Router()
        router.add(
            "GET",
            "/rest/api/3/issue/PROJ-1/transitions",
            {"transitions": [{"id": "31", "name": "Finish", "to": {"name": "Done"}}]},
        )
        client = _jira(router)

        with pytest.raises(TransitionNotFoundError) as info:
            run_async(client.transition_issue("PROJ-1", "Test"))

        assert info.value.available == ["Finish"]

    def test_assign_and_labels(self):
        router = _Router()
        router.add("PUT", "/rest/api/3/issue/PROJ-1/assignee", httpx.Response(204))
        router.add("PUT", "/rest/api/3/issue/PROJ-1", httpx.Response(204))
        client = _jira(router)

        async def scenario():
            await client.assign_issue("PROJ-1", None)
            await client.add_label("PROJ-1", "claude-bot-pr-pending")
            await client.remove_label("PROJ-1", "claude-bot-pr-pending")

        run_async(scenario())

        assert router.bodies("PUT", "/rest/api/3/issue/PROJ-1/assignee") == [{"accountId": None}]
        assert router.bodies("PUT", "/rest/api/3/issue/PROJ-1") == [
            {"update": {"labels": [{"add": "claude-bot-pr-pending"}]}},
            {"update": {"labels": [{"remove": "claude-bot-pr-pending"}]}},
        ]

    def test_errors_raise_jira_error(self):
        router = _Router()
        client = _jira(router)

        with pytest.raises(JiraAPIError) as info:
            run_async(client.get_myself())

        assert info.value.status_code == 404
        assert run_async(client.health_check()) is False
