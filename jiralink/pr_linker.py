#!/usr/bin/env python3
"""
Pattern matching and PR body reconciliation for linking pull requests to Jira tickets
"""

import re
from typing import Callable, Dict, List, NamedTuple, Optional


# Branches opened by dependency bots
BOT_BRANCH_PATTERNS = [
    re.compile(r'^dependabot'),
    re.compile(r'^all-contributors'),
    re.compile(r'^renovate/'),
]

# Long-lived branches that never carry a ticket
DEFAULT_BRANCH_PATTERNS = [
    re.compile(r'^master$'),
    re.compile(r'^main$'),
    re.compile(r'^production$'),
    re.compile(r'^gh-pages$'),
]

JIRA_REGEX_MATCHER = re.compile(r'([a-z][a-z0-9_]*-\d+)', re.IGNORECASE | re.ASCII)

DEFAULT_FIX_VERSION_REGEX = r'(?:^|[\s\-_])(v?\d+\.\d+(?:\.\d+)?(?:[\-\+][\w\.\-]*)?)'

HIDDEN_MARKER_START = '<!--jira-description-hidden-marker-start-->'
HIDDEN_MARKER_END = '<!--jira-description-hidden-marker-end-->'
WARNING_MESSAGE_ABOUT_HIDDEN_MARKERS = (
    '<!--\n'
    '  do not remove this marker as it will break the jiralink functionality.\n'
    '  added_by: jiralink\n'
    '-->'
)


class PatternCompilationError(ValueError):
    """Raised when a configured regular expression cannot be compiled"""

    def __init__(self, pattern, error):
        super().__init__(f"Invalid regular expression '{pattern}': {error}")
        self.pattern = pattern
        self.error = error


class VersionComparison(NamedTuple):
    matches: bool
    jira_version: Optional[str]
    extracted_version: Optional[str]


def compile_pattern(pattern: str, flags: int = 0) -> re.Pattern:
    """
    Compile a user supplied regular expression

    Args:
        pattern: Regular expression source
        flags: re module flags

    Returns:
        re.Pattern: Compiled pattern

    Raises:
        PatternCompilationError: If the source is not a valid regular expression
    """
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        raise PatternCompilationError(pattern, e) from e


def should_skip_branch(branch: str, additional_ignore_pattern: Optional[str] = None) -> bool:
    """
    Check whether a branch is exempt from issue linking

    Bot branches are checked first, then default branches, then the
    caller supplied pattern. An empty or missing pattern is never compiled.

    Args:
        branch: Head branch name of the PR
        additional_ignore_pattern: Optional regular expression of extra branches to skip

    Returns:
        bool: True if the branch should be skipped
    """
    if any(pattern.search(branch) for pattern in BOT_BRANCH_PATTERNS):
        print("You look like a bot 🤖 so we're letting you off the hook!")
        return True

    if any(pattern.search(branch) for pattern in DEFAULT_BRANCH_PATTERNS):
        print(f"Ignoring check for default branch {branch}")
        return True

    if additional_ignore_pattern:
        ignore_pattern = compile_pattern(additional_ignore_pattern)
        if ignore_pattern.search(branch):
            print(f"Branch '{branch}' ignored as it matches the ignore pattern "
                  f"'{additional_ignore_pattern}' provided in skip-branches")
            return True

    return False


def get_jira_issue_key(text: str, regexp: re.Pattern = JIRA_REGEX_MATCHER) -> Optional[str]:
    """
    Return the last capture group of the first match, or the whole match
    when the pattern has no groups
    """
    match = regexp.search(text or '')
    if not match:
        return None
    if regexp.groups:
        return match.group(regexp.groups)
    return match.group(0)


def get_issue_key_by_default_pattern(text: str) -> Optional[str]:
    """
    Extract a PROJECT-123 style key from free text

    Args:
        text: Branch name or PR title

    Returns:
        str: Upper-cased issue key of the first candidate, None if not found
    """
    key = get_jira_issue_key(text)
    return key.upper() if key else None


def get_issue_key_by_custom_pattern(text: str, number_pattern: str,
                                    project_key: Optional[str] = None) -> Optional[str]:
    """
    Extract an issue key using a caller supplied pattern

    When the pattern has a capture group the group is the ticket reference.
    If a project key is given the result is PROJECT-<reference>.

    Args:
        text: Branch name or PR title
        number_pattern: Regular expression source, matched case-insensitively
        project_key: Optional Jira project key to prefix the reference with

    Returns:
        str: Upper-cased issue key, None if not found

    Raises:
        PatternCompilationError: If number_pattern is not a valid regular expression
    """
    custom_regexp = compile_pattern(number_pattern, re.IGNORECASE)

    ticket_number = get_jira_issue_key(text, custom_regexp)
    if not ticket_number:
        return None

    key = f"{project_key}-{ticket_number}" if project_key else ticket_number
    return key.upper()


def _split_hidden_block(body: str):
    """
    Split a PR body around its hidden marker block

    The block starts at the first start marker and ends at the end marker
    closing the last start marker that follows it, so duplicated blocks
    collapse into one and end markers outside any block are left alone.
    One whitespace character after the end marker is swallowed.

    Returns:
        tuple: (prefix, has_block, suffix)
    """
    start_rg = re.compile(re.escape(HIDDEN_MARKER_START), re.IGNORECASE)
    end_rg = re.compile(f"{re.escape(HIDDEN_MARKER_END)}\\s?", re.IGNORECASE)

    start = start_rg.search(body)
    if not start:
        return body, False, ''

    end = None
    position = start.end()
    while True:
        closing = end_rg.search(body, position)
        if not closing:
            break
        end = closing
        next_start = start_rg.search(body, closing.end())
        if not next_start:
            break
        position = next_start.end()

    if end is None:
        return body, False, ''
    return body[:start.start()], True, body[end.end():]


def get_pr_description(old_body: Optional[str], details: str) -> str:
    """
    Merge the ticket info block into an existing PR body

    The previous block, if any, is replaced in place and stray warning
    messages are removed, so merging twice with the same details yields
    the same body.

    Args:
        old_body: Current PR body, may be None or empty
        details: Info block to put between the hidden markers

    Returns:
        str: New PR body
    """
    old_body = old_body or ''
    jira_details_message = (
        f"{WARNING_MESSAGE_ABOUT_HIDDEN_MARKERS}\n"
        f"{HIDDEN_MARKER_START}\n"
        f"{details}\n"
        f"{HIDDEN_MARKER_END}\n"
    )

    prefix, has_block, suffix = _split_hidden_block(old_body)
    if not has_block:
        return jira_details_message + old_body

    warning_rg = re.compile(f"{re.escape(WARNING_MESSAGE_ABOUT_HIDDEN_MARKERS)}\\s?", re.IGNORECASE)
    prefix = warning_rg.sub('', prefix)
    suffix = warning_rg.sub('', suffix)
    return prefix + jira_details_message + suffix


def build_pr_description(details: Dict, skip_title: bool = False) -> str:
    """
    Render the info block for a ticket

    Args:
        details: Ticket summary with key, summary, url and type
        skip_title: Only return the plain ticket link

    Returns:
        str: HTML table, or the bare ticket URL when skip_title is set
    """
    if skip_title:
        return details['url']

    display_key = details['key'].upper()
    return (
        "<table><tbody><tr><td>\n"
        f"  <a href=\"{details['url']}\" title=\"{display_key}\" target=\"_blank\">"
        f"<img alt=\"{details['type']['name']}\" src=\"{details['type']['icon']}\" /> {display_key}</a>\n"
        f"  {details['summary']}\n"
        "</td></tr></tbody></table>"
    )


def extract_version_from_string(version_string: str, custom_regex: Optional[str] = None) -> Optional[str]:
    """
    Extract a version number from a release label

    Supports labels like "android 4.17.0", "4.17.0", "v4.17.0" or "web-1.0.0-rc.1".

    Args:
        version_string: Text containing the version
        custom_regex: Optional pattern whose first group is the version

    Returns:
        str: Version without a leading "v", None if not found
    """
    if custom_regex:
        version_regex = compile_pattern(custom_regex, re.IGNORECASE)
    else:
        version_regex = compile_pattern(DEFAULT_FIX_VERSION_REGEX, re.IGNORECASE | re.ASCII)
    match = version_regex.search(version_string or '')

    if match and version_regex.groups and match.group(1):
        # Strip the "v" prefix
        return re.sub(r'^v', '', match.group(1), flags=re.IGNORECASE)

    return None


def _normalize_fix_version(value: str) -> str:
    return value.strip().lower()


def _match_wildcard(wildcard_fix_versions: List[str]) -> Callable:
    wildcard_set = {_normalize_fix_version(v) for v in wildcard_fix_versions}
    wildcard_set.discard('')

    def strategy(expected_version, fix_versions):
        for fix_version in fix_versions:
            if _normalize_fix_version(fix_version['name']) in wildcard_set:
                print(f"✓ Wildcard fix version matched: {fix_version['name']}")
                return fix_version['name']
        return None

    return strategy


def _match_directly(expected_version, fix_versions):
    for fix_version in fix_versions:
        print(f"Comparing \"{fix_version['name']}\" == \"{expected_version}\"")
        if fix_version['name'] == expected_version:
            print(f"✓ Direct match found: {fix_version['name']} == {expected_version}")
            return fix_version['name']
    return None


def _match_by_pattern(custom_regex: str) -> Callable:
    def strategy(expected_version, fix_versions):
        for fix_version in fix_versions:
            extracted = extract_version_from_string(fix_version['name'], custom_regex)
            print(f"Extracted version from \"{fix_version['name']}\": {extracted}")
            if extracted and extracted == expected_version:
                print(f"✓ Version match found: {extracted} == {expected_version}")
                return extracted
        return None

    return strategy


def compare_fix_versions(expected_version: str,
                         jira_fix_versions: Optional[List[Dict]] = None,
                         custom_regex: Optional[str] = None,
                         wildcard_fix_versions: Optional[List[str]] = None) -> VersionComparison:
    """
    Compare the expected release against the fix versions of a ticket

    Strategies run in order: wildcard labels, then either a direct string
    comparison (no custom_regex) or a comparison of extracted versions.

    Args:
        expected_version: Version the repository is releasing
        jira_fix_versions: Fix versions of the ticket, each a dict with a "name"
        custom_regex: Optional pattern used to extract versions from the labels
        wildcard_fix_versions: Labels that always count as a match

    Returns:
        VersionComparison: Match flag, joined label names and the extracted version
    """
    if not jira_fix_versions:
        print("No fix versions found in JIRA ticket")
        return VersionComparison(False, None, None)

    jira_version = ", ".join(v['name'] for v in jira_fix_versions)
    print(f"JIRA fix version(s): {jira_version}")

    strategies = []
    if wildcard_fix_versions:
        strategies.append(_match_wildcard(wildcard_fix_versions))
    if custom_regex:
        print(f"Using custom regex pattern: {custom_regex}")
        strategies.append(_match_by_pattern(custom_regex))
    else:
        print("No custom regex provided, comparing versions directly (as-is)")
        strategies.append(_match_directly)

    for strategy in strategies:
        matched = strategy(expected_version, jira_fix_versions)
        if matched is not None:
            return VersionComparison(True, jira_version, matched)

    if custom_regex:
        fallback = extract_version_from_string(jira_fix_versions[0]['name'], custom_regex)
    else:
        fallback = jira_fix_versions[0]['name']

    print(f"✗ Version mismatch: Expected {expected_version}, found {fallback or 'no version'} in JIRA")
    return VersionComparison(False, jira_version, fallback)
