"""
Platform clients for the stale issue handler.

Each client wraps an authenticated connection for a single project and
exposes the same small surface, so the handler never touches PyGithub or
python-gitlab objects directly:

- get_items(page, per_page, only_labels): one page of open issues and pull/merge requests
- list_comments_since(item, since): comments created since a point in time
- get_label_events(item): label events for an item, oldest first
- add_comment / add_label / remove_label / close_item: mutations

Items, comments and label events are plain dictionaries. Errors raised by the
underlying library are not caught here.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional


logger = logging.getLogger(__name__)


def parse_timestamp(value) -> Optional[datetime]:
    """
    Parse a timestamp returned by a platform API into an aware datetime.

    Accepts datetime objects (naive values are assumed to be UTC) and
    ISO 8601 strings, including the 'Z' suffix GitLab uses.

    Args:
        value: datetime, ISO 8601 string or None

    Returns:
        Timezone-aware datetime, or None if value is empty

    Raises:
        ValueError: If the string cannot be parsed
    """
    if not value:
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    date_str = value
    if date_str.endswith('Z'):
        date_str = date_str[:-1] + '+00:00'

    try:
        parsed = datetime.fromisoformat(date_str)
    except ValueError:
        formats = [
            '%Y-%m-%dT%H:%M:%S%z',
            '%Y-%m-%dT%H:%M:%S.%f%z',
            '%Y-%m-%d %H:%M:%S%z',
        ]
        for fmt in formats:
            try:
                parsed = datetime.strptime(date_str, fmt)
                break
            except ValueError:
                continue
        else:
            raise ValueError(f"Unable to parse date: {value}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# GitHub (PyGithub)
# =============================================================================


def _build_github_item_dict(issue) -> dict:
    """
    Build a standardized item dictionary from a GitHub Issue object.

    GitHub lists pull requests through the issues API; they are recognised by
    their ``pull_request`` attribute.
    """
    return {
        'number': issue.number,
        'title': issue.title,
        'updated_at': parse_timestamp(issue.updated_at),
        'state': issue.state,
        'locked': bool(issue.locked),
        'labels': [label.name for label in issue.labels],
        'item_type': 'pr' if issue.pull_request is not None else 'issue',
        'web_url': issue.html_url,
        'source': issue,
    }


class GitHubClient:
    """Issues and pull requests of one GitHub repository."""

    platform = 'github'

    def __init__(self, gh, repo_name: str, actor: str):
        self.repo_name = repo_name
        self.actor = actor
        self.repo = gh.get_repo(repo_name, lazy=True)

    def get_items(self, page: int, per_page: int, only_labels: List[str]) -> List[dict]:
        """
        Get one page of open issues and pull requests.

        The page size is fixed on the Github connection (see
        create_github_client); per_page is accepted for interface parity.

        Args:
            page: 1-based page number
            per_page: Number of items per page
            only_labels: The configured only_labels string split into label
                names; only items carrying all of them are returned

        Returns:
            List of item dictionaries, empty when there are no more pages
        """
        kwargs = {'state': 'open'}
        if only_labels:
            kwargs['labels'] = only_labels

        issues = self.repo.get_issues(**kwargs)
        # PaginatedList pages are 0-based
        items = [_build_github_item_dict(issue) for issue in issues.get_page(page - 1)]
        logger.debug(f"Fetched {len(items)} items from page {page} of {self.repo_name}")
        return items

    def list_comments_since(self, item: dict, since: datetime) -> List[dict]:
        comments = item['source'].get_comments(since=since)
        result = []
        for comment in comments:
            user = comment.user
            result.append({
                'login': user.login if user else '',
                'is_human': user is not None and user.type == 'User',
            })
        return result

    def get_label_events(self, item: dict) -> List[dict]:
        events = []
        for event in item['source'].get_events():
            label = getattr(event, 'label', None)
            events.append({
                'event': event.event,
                'label': label.name if label else None,
                'created_at': parse_timestamp(event.created_at),
            })
        return events

    def add_comment(self, item: dict, body: str) -> None:
        item['source'].create_comment(body)

    def add_label(self, item: dict, label: str) -> None:
        item['source'].add_to_labels(label)

    def remove_label(self, item: dict, label: str) -> None:
        item['source'].remove_from_labels(label)

    def close_item(self, item: dict) -> None:
        item['source'].edit(state='closed')


# =============================================================================
# GitLab (python-gitlab)
# =============================================================================


def _build_gitlab_item_dict(obj, item_type: str) -> dict:
    """
    Build a standardized item dictionary from a GitLab issue or merge request.

    Uses the same keys as GitHub item dicts. GitLab reports open items as
    'opened'; merged merge requests are treated as closed.
    """
    return {
        'number': obj.iid,
        'title': obj.title,
        'updated_at': parse_timestamp(obj.updated_at),
        'state': 'open' if obj.state == 'opened' else 'closed',
        'locked': bool(getattr(obj, 'discussion_locked', False)),
        'labels': list(obj.labels or []),
        'item_type': item_type,
        'web_url': obj.web_url,
        'source': obj,
    }


class GitLabClient:
    """Issues and merge requests of one GitLab project."""

    platform = 'gitlab'

    def __init__(self, gl, project_id, actor: str):
        self.project_id = project_id
        self.actor = actor
        self.project = gl.projects.get(project_id, lazy=True)

    def get_items(self, page: int, per_page: int, only_labels: List[str]) -> List[dict]:
        """
        Get one page of open issues followed by one page of open merge requests.

        Both listings use the same page number, so the combined page is only
        empty once both are exhausted.

        Args:
            page: 1-based page number
            per_page: Number of items per listing page
            only_labels: The configured only_labels string split into label
                names; only items carrying all of them are returned

        Returns:
            List of item dictionaries, empty when there are no more pages
        """
        kwargs = {'state': 'opened', 'page': page, 'per_page': per_page}
        if only_labels:
            kwargs['labels'] = only_labels

        issues = self.project.issues.list(**kwargs)
        merge_requests = self.project.mergerequests.list(**kwargs)

        items = [_build_gitlab_item_dict(issue, 'issue') for issue in issues]
        items.extend(_build_gitlab_item_dict(mr, 'pr') for mr in merge_requests)
        logger.debug(
            f"Fetched {len(issues)} issues and {len(merge_requests)} merge requests "
            f"from page {page} of project {self.project_id}"
        )
        return items

    def list_comments_since(self, item: dict, since: datetime) -> List[dict]:
        """
        Get notes created at or after ``since``.

        The notes API has no date filter, so notes are filtered client-side.
        System notes (label changes, commits, ...) are never human.
        """
        result = []
        notes = item['source'].notes.list(order_by='created_at', sort='asc', iterator=True)
        for note in notes:
            created_at = parse_timestamp(getattr(note, 'created_at', None))
            if created_at is None or created_at < since:
                continue
            author = getattr(note, 'author', None) or {}
            result.append({
                'login': author.get('username', ''),
                'is_human': not getattr(note, 'system', False) and not author.get('bot', False),
            })
        return result

    def get_label_events(self, item: dict) -> List[dict]:
        events = []
        for event in item['source'].resourcelabelevents.list(iterator=True):
            label = getattr(event, 'label', None) or {}
            events.append({
                'event': 'labeled' if event.action == 'add' else 'unlabeled',
                'label': label.get('name'),
                'created_at': parse_timestamp(event.created_at),
            })
        return events

    def add_comment(self, item: dict, body: str) -> None:
        item['source'].notes.create({'body': body})

    def add_label(self, item: dict, label: str) -> None:
        obj = item['source']
        obj.add_labels = label
        obj.save()

    def remove_label(self, item: dict, label: str) -> None:
        obj = item['source']
        obj.remove_labels = label
        obj.save()

    def close_item(self, item: dict) -> None:
        obj = item['source']
        obj.state_event = 'close'
        obj.save()
