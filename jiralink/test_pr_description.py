#!/usr/bin/env python3
"""
Test cases for merging Jira ticket info into PR descriptions
"""
import pytest
from pr_linker import (
    HIDDEN_MARKER_END,
    HIDDEN_MARKER_START,
    WARNING_MESSAGE_ABOUT_HIDDEN_MARKERS,
    build_pr_description,
    get_pr_description,
)

ISSUE_INFO = "new info about jira task"


def expected_block(info):
    return f"{WARNING_MESSAGE_ABOUT_HIDDEN_MARKERS}\n{HIDDEN_MARKER_START}\n{info}\n{HIDDEN_MARKER_END}\n"


def test_prepends_info_to_old_body():
    old_body = "old PR description body"
    assert get_pr_description(old_body, ISSUE_INFO) == expected_block(ISSUE_INFO) + old_body


@pytest.mark.parametrize("old_body", ["", None])
def test_empty_body(old_body):
    assert get_pr_description(old_body, ISSUE_INFO) == expected_block(ISSUE_INFO)


def test_empty_info_block():
    description = get_pr_description("body", "")
    assert description == expected_block("") + "body"
    assert get_pr_description(description, "") == description


def test_replaces_issue_info():
    old_body = f"{HIDDEN_MARKER_START}Here is some old issue information{HIDDEN_MARKER_END}old PR description body"
    description = get_pr_description(old_body, ISSUE_INFO)
    assert description == expected_block(ISSUE_INFO) + "old PR description body"


def test_does_not_duplicate_warning_when_run_multiple_times():
    old_body = f"{HIDDEN_MARKER_START}Here is some old issue information{HIDDEN_MARKER_END}old PR description body"

    first = get_pr_description(old_body, ISSUE_INFO)
    second = get_pr_description(first, ISSUE_INFO)

    assert second == first
    assert second.count(WARNING_MESSAGE_ABOUT_HIDDEN_MARKERS) == 1
    assert second.count(HIDDEN_MARKER_START) == 1
    assert second.count(HIDDEN_MARKER_END) == 1


def test_respects_location_of_existing_markers():
    old_body = (
        "this is text above the markers\n"
        f"{WARNING_MESSAGE_ABOUT_HIDDEN_MARKERS}\n"
        f"{HIDDEN_MARKER_START}\n"
        f"{ISSUE_INFO}\n"
        f"{HIDDEN_MARKER_END}\n"
        "this is text below the markers"
    )
    assert get_pr_description(old_body, ISSUE_INFO) == old_body


def test_keeps_text_around_markers_when_info_changes():
    old_body = (
        "above\n"
        f"{WARNING_MESSAGE_ABOUT_HIDDEN_MARKERS}\n"
        f"{HIDDEN_MARKER_START}\nold info\n{HIDDEN_MARKER_END}\n"
        "below"
    )
    description = get_pr_description(old_body, ISSUE_INFO)
    assert description == "above\n" + expected_block(ISSUE_INFO) + "below"
    assert "old info" not in description


def test_replaces_html_table_with_plain_link():
    old_table = "<table><tbody><tr><td>formatted content</td></tr></tbody></table>"
    old_body = f"{HIDDEN_MARKER_START}{old_table}{HIDDEN_MARKER_END}old PR description body"
    plain_link = "https://example.com/browse/ABC-123"

    description = get_pr_description(old_body, plain_link)

    assert description == expected_block(plain_link) + "old PR description body"
    assert "<table>" not in description
    assert "formatted content" not in description


def test_collapses_duplicated_blocks():
    old_body = (
        f"{HIDDEN_MARKER_START}one{HIDDEN_MARKER_END}\n"
        "middle\n"
        f"{HIDDEN_MARKER_START}two{HIDDEN_MARKER_END}\n"
        "tail"
    )
    description = get_pr_description(old_body, ISSUE_INFO)
    assert description.count(HIDDEN_MARKER_START) == 1
    assert description.endswith("tail")


@pytest.mark.parametrize("body", [
    "",
    "plain body",
    f"{HIDDEN_MARKER_START}x{HIDDEN_MARKER_END}",
    f"intro\n{WARNING_MESSAGE_ABOUT_HIDDEN_MARKERS}\n{HIDDEN_MARKER_START}\nx\n{HIDDEN_MARKER_END}\noutro",
])
def test_merge_is_idempotent(body):
    once = get_pr_description(body, ISSUE_INFO)
    assert get_pr_description(once, ISSUE_INFO) == once


@pytest.mark.parametrize("body", [
    f"notes {HIDDEN_MARKER_END} keep me",
    f"{HIDDEN_MARKER_END}\nnotes",
    f"intro {HIDDEN_MARKER_START} never closed",
    f"{HIDDEN_MARKER_START}x{HIDDEN_MARKER_END}\nmiddle {HIDDEN_MARKER_END} tail",
])
def test_merge_is_idempotent_with_orphan_markers(body):
    once = get_pr_description(body, ISSUE_INFO)
    assert get_pr_description(once, ISSUE_INFO) == once


def test_orphan_end_marker_keeps_user_text():
    body = f"notes {HIDDEN_MARKER_END} keep me"
    description = get_pr_description(get_pr_description(body, ISSUE_INFO), ISSUE_INFO)
    assert description == expected_block(ISSUE_INFO) + body


def test_end_marker_before_block_stays_in_prefix():
    body = f"notes {HIDDEN_MARKER_END} more\n{HIDDEN_MARKER_START}old{HIDDEN_MARKER_END}\ntail"
    description = get_pr_description(body, ISSUE_INFO)
    assert description == f"notes {HIDDEN_MARKER_END} more\n" + expected_block(ISSUE_INFO) + "tail"


DETAILS = {
    'key': 'abc-123',
    'summary': 'Sample summary',
    'url': 'example.com/ABC-123',
    'type': {'name': 'story', 'icon': 'icon.png'},
    'project': {'name': 'name', 'url': 'url', 'key': 'key'},
}


@pytest.mark.parametrize("skip_title", [None, False])
def test_build_pr_description_table(skip_title):
    args = () if skip_title is None else (skip_title,)
    assert build_pr_description(DETAILS, *args) == (
        "<table><tbody><tr><td>\n"
        '  <a href="example.com/ABC-123" title="ABC-123" target="_blank">'
        '<img alt="story" src="icon.png" /> ABC-123</a>\n'
        "  Sample summary\n"
        "</td></tr></tbody></table>"
    )


def test_build_pr_description_plain_link():
    result = build_pr_description(DETAILS, True)
    assert result == "example.com/ABC-123"
    assert "<" not in result and "Sample summary" not in result


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
