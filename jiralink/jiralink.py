#!/usr/bin/env python3
"""
Script to link a GitHub PR to its Jira ticket: finds the issue key, writes the
ticket info into the PR description and optionally checks the ticket fix version
"""

import os
import sys
import requests
import argparse
import json
import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from pr_linker import (
    build_pr_description,
    compare_fix_versions,
    get_issue_key_by_custom_pattern,
    get_issue_key_by_default_pattern,
    get_pr_description,
    should_skip_branch,
)


class IssueSource(str, Enum):
    BRANCH = "branch"
    PR_TITLE = "pr-title"
    BOTH = "both"


class IssueKeyNotFoundError(LookupError):
    pass


def env_flag(name):
    return os.getenv(name, "").strip().lower() == "true"


def split_wildcards(raw):
    """
    Split a comma separated list of wildcard fix versions

    Args:
        raw: e.g. "Next Release, Backlog,"

    Returns:
        list: Trimmed, non-empty entries
    """
    if not raw:
        return []
    return [value.strip() for value in raw.split(",") if value.strip()]


@dataclass(frozen=True)
class LinkerConfig:
    jira_base_url: str
    jira_token: str
    github_token: str
    repository: str = ""
    event_path: Optional[str] = None
    branch_ignore_pattern: str = ""
    custom_issue_number_regexp: str = ""
    jira_project_key: str = ""
    what_to_use: IssueSource = IssueSource.PR_TITLE
    fail_when_jira_issue_not_found: bool = False
    skip_ticket_title: bool = False
    compare_fix_version: str = ""
    fix_version_regex: str = ""
    fix_version_wildcards: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_args(cls, args):
        return cls(
            jira_base_url=args.jira_base_url.rstrip('/'),
            jira_token=args.jira_token,
            github_token=args.github_token,
            repository=args.repository or "",
            event_path=args.event_path,
            branch_ignore_pattern=args.skip_branches or "",
            custom_issue_number_regexp=args.custom_issue_number_regexp or "",
            jira_project_key=args.jira_project_key or "",
            what_to_use=IssueSource(args.use),
            fail_when_jira_issue_not_found=args.fail_when_jira_issue_not_found,
            skip_ticket_title=args.skip_ticket_title,
            compare_fix_version=args.compare_fix_version or "",
            fix_version_regex=args.fix_version_regex or "",
            fix_version_wildcards=tuple(split_wildcards(args.fix_version_wildcards)),
        )


class GitHubPR:
    def __init__(self, token, owner, repo, base_url="https://api.github.com"):
        """
        Initialize the GitHub PR client

        Args:
            token: GitHub token
            owner: GitHub repository owner/organization
            repo: GitHub repository name
            base_url: GitHub REST API root
        """
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.owner = owner
        self.repo = repo
        self.headers = {
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github.v3+json"
        }

    def _pull_url(self, pr_number):
        return f"{self.base_url}/repos/{self.owner}/{self.repo}/pulls/{pr_number}"

    def get_pull_request(self, pr_number):
        """
        Fetch a PR

        Args:
            pr_number: GitHub PR number

        Returns:
            dict: PR data (title, body, head, ...)
        """
        response = requests.get(self._pull_url(pr_number), headers=self.headers)
        response.raise_for_status()
        return response.json()

    def update_pr_description(self, pr_number, description):
        """
        Replace the description of a PR

        Returns:
            bool: True if successful, False otherwise
            str: Status message indicating what happened
        """
        try:
            response = requests.patch(self._pull_url(pr_number), headers=self.headers,
                                      json={"body": description})
            response.raise_for_status()
            return True, "PR description updated successfully"
        except requests.exceptions.RequestException as e:
            error_msg = f"Error updating PR description: {e}"
            print(error_msg, file=sys.stderr)
            return False, error_msg

    def update_pr_details(self, pr_number, current_body, info_block):
        """
        Merge the ticket info block into the PR description

        Args:
            pr_number: GitHub PR number
            current_body: Description the PR has now (may be None)
            info_block: Rendered ticket info

        Returns:
            bool: True if successful, False otherwise
            str: Status message indicating what happened
        """
        new_body = get_pr_description(current_body, info_block)
        if new_body == (current_body or ""):
            return True, "PR description already up to date"
        return self.update_pr_description(pr_number, new_body)


class JiraConnector:
    def __init__(self, jira_url, token):
        """
        Initialize the Jira client

        Args:
            jira_url: Base URL of your Jira instance (e.g., https://yourcompany.atlassian.net)
            token: "email:api_token" pair used for basic auth
        """
        self.jira_url = jira_url.rstrip('/')
        encoded_token = base64.b64encode(token.encode("utf-8")).decode("ascii")
        self.headers = {
            "Authorization": f"Basic {encoded_token}",
            "Accept": "application/json"
        }

    def get_ticket_details(self, key):
        """
        Fetch ticket summary from Jira

        Args:
            key: Jira issue key (e.g., PROJ-123)

        Returns:
            dict: key, summary, url, type, project and fixVersions

        Raises:
            requests.exceptions.RequestException: On HTTP errors
            KeyError: If the response misses a required field
        """
        url = f"{self.jira_url}/rest/api/3/issue/{key}"
        params = {"fields": "project,summary,issuetype,fixVersions"}

        response = requests.get(url, headers=self.headers, params=params)
        response.raise_for_status()

        issue_data = response.json()
        fields = issue_data['fields']
        # Jira sends null for fields hidden from the token
        issue_type = fields.get('issuetype') or {}
        project = fields.get('project') or {}

        return {
            'key': issue_data['key'],
            'summary': fields['summary'],
            'url': f"{self.jira_url}/browse/{issue_data['key']}",
            'type': {
                'name': issue_type.get('name', ''),
                'icon': issue_type.get('iconUrl', ''),
            },
            'project': {
                'name': project.get('name', ''),
                'url': f"{self.jira_url}/browse/{project['key']}" if project.get('key') else '',
                'key': project.get('key', ''),
            },
            'fixVersions': [
                {'name': v['name'], 'id': v.get('id')}
                for v in fields.get('fixVersions') or []
            ],
        }


def load_pull_request_event(event_path):
    """
    Read the pull_request payload of a GitHub event file

    Returns:
        dict: The pull_request object, None if the event is not about a PR
    """
    if not event_path or not os.path.exists(event_path):
        return None
    with open(event_path, encoding='utf-8') as f:
        event = json.load(f)
    return event.get("pull_request")


def _key_from(text, config):
    if config.custom_issue_number_regexp:
        return get_issue_key_by_custom_pattern(
            text, config.custom_issue_number_regexp, config.jira_project_key or None)
    return get_issue_key_by_default_pattern(text)


def find_issue_key(title, branch, config):
    """
    Find the Jira issue key in the PR title and/or head branch

    Args:
        title: PR title
        branch: Head branch name
        config: LinkerConfig

    Returns:
        tuple: (issue key, IssueSource it was found in)

    Raises:
        IssueKeyNotFoundError: If no key is found
    """
    if config.what_to_use == IssueSource.BRANCH:
        candidates = [(branch, IssueSource.BRANCH)]
    elif config.what_to_use == IssueSource.BOTH:
        candidates = [(title, IssueSource.PR_TITLE), (branch, IssueSource.BRANCH)]
    else:
        candidates = [(title, IssueSource.PR_TITLE)]

    for text, source in candidates:
        key = _key_from(text or "", config)
        if key:
            print(f"JIRA key found -> {key} (from {source.value})")
            return key, source

    raise IssueKeyNotFoundError(f"JIRA key not found in {config.what_to_use.value}")


def set_outputs(key, source, output_path=None):
    """
    Expose the result of the run as step outputs

    Args:
        key: Issue key or None
        source: IssueSource or None
        output_path: File to append name=value lines to (defaults to $GITHUB_OUTPUT)

    Returns:
        dict: The outputs written
    """
    outputs = {
        "jira-issue-key": key or "",
        "jira-issue-found": "true" if key is not None else "false",
        "jira-issue-source": source.value if source else "null",
    }
    output_path = output_path or os.getenv("GITHUB_OUTPUT")
    if output_path:
        with open(output_path, "a", encoding="utf-8") as f:
            for name, value in outputs.items():
                f.write(f"{name}={value}\n")
    else:
        for name, value in outputs.items():
            print(f"{name}: {value}")
    return outputs


def version_mismatch_message(expected, jira_version, extracted_version):
    if not jira_version:
        return (f"Version mismatch: Expected version `{expected}` "
                f"but JIRA ticket has no fix version set.")
    extracted = f" (extracted: {extracted_version})" if extracted_version else ""
    return (f"Version mismatch: Expected version `{expected}` "
            f"but JIRA ticket has fix version `{jira_version}`{extracted}.")


def run(config, github_pr, jira, pull_request, output_path=None):
    """
    Link the PR to its Jira ticket

    Args:
        config: LinkerConfig
        github_pr: GitHubPR client
        jira: JiraConnector client
        pull_request: pull_request payload of the event, None if not a PR
        output_path: Optional file for step outputs

    Returns:
        int: Process exit code
    """
    if not pull_request:
        print("This action meant to be run only on PRs")
        set_outputs(None, None, output_path)
        return 0

    branch = pull_request.get("head", {}).get("ref", "")
    pr_number = pull_request.get("number")

    try:
        if should_skip_branch(branch, config.branch_ignore_pattern):
            set_outputs(None, None, output_path)
            return 0

        key, source = find_issue_key(pull_request.get("title", ""), branch, config)

        print(f"Fetching Jira ticket: {key}")
        details = jira.get_ticket_details(key)

        info_block = build_pr_description(details, config.skip_ticket_title)
        # The event payload may be stale, re-read the body before merging
        current_body = github_pr.get_pull_request(pr_number).get("body")
        success, message = github_pr.update_pr_details(pr_number, current_body, info_block)
        if not success:
            raise RuntimeError(message)
        print(f"✅ {message}")

        result = None
        if config.compare_fix_version:
            print(f"Comparing fix version: expected {config.compare_fix_version}")
            result = compare_fix_versions(
                config.compare_fix_version,
                details.get('fixVersions'),
                config.fix_version_regex or None,
                list(config.fix_version_wildcards),
            )
    except (IssueKeyNotFoundError, ValueError, KeyError, RuntimeError,
            requests.exceptions.RequestException) as e:
        print("❌ Failed to add JIRA description to PR.")
        print(f"Error: {e}", file=sys.stderr)
        set_outputs(None, None, output_path)
        return 1 if config.fail_when_jira_issue_not_found else 0

    if result is not None:
        if not result.matches:
            error_message = version_mismatch_message(
                config.compare_fix_version, result.jira_version, result.extracted_version)
            print("⚠️  Fix Version Mismatch", file=sys.stderr)
            print(error_message, file=sys.stderr)
            print(f"Expected: {config.compare_fix_version}", file=sys.stderr)
            print(f"JIRA Fix Version: {result.jira_version or 'Not set'}", file=sys.stderr)
            set_outputs(key, source, output_path)
            return 1

        print(f"✓ Fix version matches: {config.compare_fix_version}")

    set_outputs(key, source, output_path)
    return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='Add Jira ticket details to a GitHub PR description and check its fix version')

    # Jira arguments
    jira_group = parser.add_argument_group('Jira Options')
    jira_group.add_argument('--jira-base-url', help='Jira base URL',
                            default=os.getenv('JIRA_BASE_URL'))
    jira_group.add_argument('--jira-token', help='Jira "email:api_token" pair',
                            default=os.getenv('JIRA_TOKEN'))
    jira_group.add_argument('--jira-project-key', help='Jira project key used with --custom-issue-number-regexp',
                            default=os.getenv('JIRA_PROJECT_KEY'))
    jira_group.add_argument('--custom-issue-number-regexp',
                            help='Regular expression extracting the issue number from the title/branch',
                            default=os.getenv('CUSTOM_ISSUE_NUMBER_REGEXP'))
    jira_group.add_argument('--fail-when-jira-issue-not-found', action='store_true',
                            default=env_flag('FAIL_WHEN_JIRA_ISSUE_NOT_FOUND'),
                            help='Exit with an error when no Jira issue can be linked')

    # GitHub PR options
    github_group = parser.add_argument_group('GitHub PR Options')
    github_group.add_argument('--github-token', help='GitHub token',
                              default=os.getenv('GITHUB_TOKEN'))
    github_group.add_argument('--repository', help='GitHub repository in owner/repo format',
                              default=os.getenv('GITHUB_REPOSITORY'))
    github_group.add_argument('--github-api-url', help='GitHub REST API root',
                              default=os.getenv('GITHUB_API_URL', 'https://api.github.com'))
    github_group.add_argument('--event-path', help='Path to the GitHub event JSON',
                              default=os.getenv('GITHUB_EVENT_PATH'))
    github_group.add_argument('--skip-branches', help='Regular expression of branches to ignore',
                              default=os.getenv('SKIP_BRANCHES'))
    github_group.add_argument('--use', choices=[s.value for s in IssueSource],
                              default=os.getenv('USE') or IssueSource.PR_TITLE.value,
                              help='Where to look for the issue key')
    github_group.add_argument('--skip-ticket-title', action='store_true',
                              default=env_flag('SKIP_TICKET_TITLE'),
                              help='Only add the ticket link, without title and type')

    # Fix version options
    version_group = parser.add_argument_group('Fix Version Options')
    version_group.add_argument('--compare-fix-version', help='Expected Jira fix version',
                               default=os.getenv('COMPARE_FIX_VERSION'))
    version_group.add_argument('--fix-version-regex',
                               help='Regular expression extracting the version from Jira fix versions',
                               default=os.getenv('FIX_VERSION_REGEX'))
    version_group.add_argument('--fix-version-wildcards',
                               help='Comma separated fix versions that always match',
                               default=os.getenv('FIX_VERSION_WILDCARDS'))

    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    if not args.jira_base_url:
        print("Error: Jira URL is required. Set JIRA_BASE_URL environment variable or use --jira-base-url")
        sys.exit(1)

    if not args.jira_token:
        print("Error: Jira token is required. Set JIRA_TOKEN environment variable or use --jira-token")
        sys.exit(1)

    if not args.github_token:
        print("Error: GitHub token is required. Set GITHUB_TOKEN environment variable or use --github-token")
        sys.exit(1)

    if not args.repository or "/" not in args.repository:
        print("Error: GitHub repository is required. Set GITHUB_REPOSITORY environment variable or use --repository")
        sys.exit(1)

    # argparse does not check env defaults against choices
    if args.use not in [s.value for s in IssueSource]:
        print(f"Error: Unknown issue key source '{args.use}'. Use one of: branch, pr-title, both")
        sys.exit(1)

    config = LinkerConfig.from_args(args)
    owner, repo = config.repository.split("/", 1)

    github_pr = GitHubPR(config.github_token, owner, repo, base_url=args.github_api_url)
    jira = JiraConnector(config.jira_base_url, config.jira_token)

    sys.exit(run(config, github_pr, jira, load_pull_request_event(config.event_path)))


if __name__ == "__main__":
    main()
