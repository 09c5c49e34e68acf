#!/usr/bin/env python3
"""
Stale Issue/Pull Request Handler

This script walks the open issues and pull requests (merge requests on GitLab)
of the configured projects and:
- Marks items without recent activity as stale by posting a comment and
  applying a stale label
- Removes the stale label again when someone comments on a stale item
- Closes items that stayed stale for longer than the close period

Every run is bounded by an operations budget, so a scheduled run never walks
more pages than it can afford. No state is kept between runs: staleness is
re-derived from labels, label events and comments every time.

Supported platforms:
- GitHub (via PyGithub)
- GitLab (via python-gitlab)
"""

import argparse
import logging
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import gitlab
import yaml
from github import Auth, Github, GithubException
from jinja2 import Template, TemplateSyntaxError

import issue_platforms


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


DEFAULT_PLATFORM = 'github'
DEFAULT_STALE_LABEL = 'Stale'
DEFAULT_DAYS_BEFORE_STALE = 60
DEFAULT_DAYS_BEFORE_CLOSE = 7
DEFAULT_OPERATIONS_PER_RUN = 30
DEFAULT_REMOVE_STALE_WHEN_UPDATED = True
DEFAULT_DEBUG_ONLY = False

ITEMS_PER_PAGE = 100

# Options holding label names, as a comma separated string or a YAML list
LABEL_LIST_KEYS = ('exempt_issue_labels', 'exempt_pr_labels', 'only_labels')

# Per item type: (stale message, stale label, exempt labels) option names
TYPE_SETTINGS = {
    'issue': ('stale_issue_message', 'stale_issue_label', 'exempt_issue_labels'),
    'pr': ('stale_pr_message', 'stale_pr_label', 'exempt_pr_labels'),
}


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""


@dataclass(frozen=True)
class StaleOptions:
    """Immutable settings for one stale run."""

    stale_issue_message: str = ''
    stale_pr_message: str = ''
    stale_issue_label: str = DEFAULT_STALE_LABEL
    stale_pr_label: str = DEFAULT_STALE_LABEL
    exempt_issue_labels: str = ''
    exempt_pr_labels: str = ''
    days_before_stale: float = DEFAULT_DAYS_BEFORE_STALE
    days_before_close: float = DEFAULT_DAYS_BEFORE_CLOSE  # negative disables closing
    only_labels: str = ''
    operations_per_run: int = DEFAULT_OPERATIONS_PER_RUN
    remove_stale_when_updated: bool = DEFAULT_REMOVE_STALE_WHEN_UPDATED
    debug_only: bool = DEFAULT_DEBUG_ONLY


@dataclass
class RunState:
    """Operation budget and bookkeeping for a single run."""

    operations_left: int
    staled_items: List[dict] = field(default_factory=list)
    closed_items: List[dict] = field(default_factory=list)
    unstaled_items: List[dict] = field(default_factory=list)

    def consume(self, count: int = 1) -> None:
        # Charged before the call is attempted, failed calls included
        self.operations_left -= count


# =============================================================================
# Predicates
# =============================================================================


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_label(name: str) -> str:
    decomposed = unicodedata.normalize('NFKD', name)
    return ''.join(c for c in decomposed if not unicodedata.combining(c)).casefold()


def labels_match(first: str, second: str) -> bool:
    """Compare two label names ignoring case and accents."""
    return _normalize_label(first) == _normalize_label(second)


def is_labeled(item: dict, label: str) -> bool:
    return any(labels_match(name, label) for name in item['labels'])


def updated_since(timestamp: datetime, num_days: float, now: Optional[datetime] = None) -> bool:
    """
    Check whether a timestamp lies within the last num_days days.

    Zero or negative day counts never count as recent, so any age
    qualifies as "not updated".

    Args:
        timestamp: Aware datetime to check
        num_days: Window size in days (may be fractional)
        now: Reference time (defaults to the current UTC time)

    Returns:
        True if now - timestamp <= num_days days
    """
    if num_days <= 0:
        return False
    if now is None:
        now = utc_now()
    return now - timestamp <= timedelta(days=num_days)


def parse_comma_separated_string(value: str) -> List[str]:
    """
    Split a comma separated list of label names.

    An empty string yields an empty list rather than a single empty name.
    Entries are trimmed but neither deduplicated nor case folded.
    """
    if not value:
        return []
    return [part.strip() for part in value.split(',')]


def get_type_settings(options: StaleOptions, item_type: str) -> Tuple[str, str, List[str]]:
    """Resolve the stale message, stale label and exempt labels for an item type."""
    message_key, label_key, exempt_key = TYPE_SETTINGS[item_type]
    return (
        getattr(options, message_key),
        getattr(options, label_key),
        parse_comma_separated_string(getattr(options, exempt_key)),
    )


def render_stale_message(message: str, item: dict, options: StaleOptions) -> str:
    """Render a stale message template for an item."""
    template = Template(message)
    return template.render(
        number=item['number'],
        title=item['title'],
        item_type=item['item_type'],
        days_before_stale=options.days_before_stale,
        days_before_close=options.days_before_close,
    )


def _describe(item: dict) -> str:
    return f"{item['item_type']} #{item['number']}"


# =============================================================================
# Decision Engine
# =============================================================================


def process_item(client, options: StaleOptions, run: RunState, item: dict) -> None:
    """
    Evaluate a single item and apply the stale/unstale/close transitions.

    Skipped items (empty stale message for their type, closed, locked or
    carrying an exempt label) cost no operations.

    Args:
        client: Platform client (see issue_platforms)
        options: Run settings
        run: Run state holding the operation budget and bookkeeping lists
        item: Item dictionary; updated_at and labels may be rewritten
    """
    item_type = item['item_type']
    now = utc_now()

    logger.info(
        f"Found {_describe(item)} - {item['title']} last updated {item['updated_at']}"
    )

    stale_message, stale_label, exempt_labels = get_type_settings(options, item_type)

    if not stale_message:
        logger.info(f"Skipping {_describe(item)} due to empty stale message")
        return

    if item['state'] == 'closed':
        logger.info(f"Skipping {_describe(item)} because it is closed")
        return

    if item['locked']:
        logger.info(f"Skipping {_describe(item)} because it is locked")
        return

    if any(is_labeled(item, exempt_label) for exempt_label in exempt_labels):
        logger.info(f"Skipping {_describe(item)} because it has an exempt label")
        return

    is_stale = is_labeled(item, stale_label)
    should_be_stale = not updated_since(item['updated_at'], options.days_before_stale, now)

    if not is_stale and should_be_stale:
        logger.info(
            f"Marking {_describe(item)} stale because it was last updated on "
            f"{item['updated_at']} and it does not have a stale label"
        )
        mark_stale(client, options, run, item, stale_message, stale_label, now)
        is_stale = True

    if is_stale:
        logger.info(f"Found a stale {item_type}")
        process_stale_item(client, options, run, item, stale_label, now)


def mark_stale(
    client,
    options: StaleOptions,
    run: RunState,
    item: dict,
    stale_message: str,
    stale_label: str,
    now: datetime
) -> None:
    """
    Mark an item stale with a comment and a label.

    The item's updated_at is moved back to exactly days_before_stale days
    before now, as if it had been marked on the day it actually went stale.
    The close period is then counted from that day regardless of how late the
    run noticed, and days_before_close=0 closes the item on the next run.
    """
    logger.info(f"Marking {_describe(item)} - {item['title']} as stale")

    run.staled_items.append(item)
    run.consume(2)

    item['updated_at'] = now - timedelta(days=options.days_before_stale)
    item['labels'].append(stale_label)

    if options.debug_only:
        logger.info(
            f"[DRY RUN] Would comment on {_describe(item)} and add label '{stale_label}'"
        )
        return

    client.add_comment(item, render_stale_message(stale_message, item, options))
    client.add_label(item, stale_label)


def process_stale_item(
    client,
    options: StaleOptions,
    run: RunState,
    item: dict,
    stale_label: str,
    now: datetime
) -> None:
    """Handle un-staling and closing of an item that carries the stale label."""
    marked_stale_on = get_label_applied_date(client, run, item, stale_label) or item['updated_at']
    logger.info(f"{_describe(item)} marked stale on: {marked_stale_on}")

    has_comments = has_comments_since(client, item, marked_stale_on)
    logger.info(f"{_describe(item)} has been commented on: {has_comments}")

    has_update = updated_since(
        item['updated_at'],
        options.days_before_close + options.days_before_stale,
        now
    )
    logger.info(f"{_describe(item)} has been updated: {has_update}")

    if options.remove_stale_when_updated and has_comments:
        logger.info(f"{_describe(item)} is no longer stale. Removing stale label.")
        remove_stale_label(client, options, run, item, stale_label)

    if options.days_before_close < 0:
        return

    if not has_comments and not has_update:
        logger.info(
            f"Closing {_describe(item)} because it was last updated on {item['updated_at']}"
        )
        close_item(client, options, run, item)
    else:
        logger.info(
            f"Stale {_describe(item)} is not old enough to close yet "
            f"(hasComments? {has_comments}, hasUpdate? {has_update})"
        )


def get_label_applied_date(client, run: RunState, item: dict, label: str) -> Optional[datetime]:
    """
    Get the date the given label was last applied to an item.

    Args:
        client: Platform client
        run: Run state (one operation is consumed)
        item: Item dictionary
        label: Label name

    Returns:
        Creation date of the most recent 'labeled' event for the label, or
        None if there is none (e.g. the label predates the event history)
    """
    logger.info(f"Checking for label {label} on {_describe(item)}")

    run.consume(1)
    events = client.get_label_events(item)

    for event in reversed(events):
        if event['event'] == 'labeled' and event['label'] and labels_match(event['label'], label):
            return event['created_at']
    return None


def has_comments_since(client, item: dict, since: Optional[datetime]) -> bool:
    """
    Check whether a human other than the bot commented on an item since a date.

    An unknown date counts as commented, so an item is never closed when
    the moment it went stale is unknown.
    """
    logger.info(f"Checking for comments on {_describe(item)} since {since}")

    if not since:
        return True

    comments = client.list_comments_since(item, since)
    filtered_comments = [
        comment for comment in comments
        if comment['is_human'] and comment['login'] != client.actor
    ]

    logger.info(
        f"Comments not made by {client.actor} or another bot: {len(filtered_comments)}"
    )
    return len(filtered_comments) > 0


def remove_stale_label(
    client,
    options: StaleOptions,
    run: RunState,
    item: dict,
    label: str
) -> None:
    logger.info(f"Removing label {label} from {_describe(item)} - {item['title']}")

    run.unstaled_items.append(item)
    run.consume(1)

    item['labels'] = [name for name in item['labels'] if not labels_match(name, label)]

    if options.debug_only:
        logger.info(f"[DRY RUN] Would remove label '{label}' from {_describe(item)}")
        return

    client.remove_label(item, label)


def close_item(client, options: StaleOptions, run: RunState, item: dict) -> None:
    logger.info(f"Closing {_describe(item)} - {item['title']} for being stale")

    run.closed_items.append(item)
    run.consume(1)

    item['state'] = 'closed'

    if options.debug_only:
        logger.info(f"[DRY RUN] Would close {_describe(item)}")
        return

    client.close_item(item)


# =============================================================================
# Batch Driver
# =============================================================================


def process_items(client, options: StaleOptions, run: Optional[RunState] = None) -> RunState:
    """
    Walk the open items page by page and evaluate each of them.

    Stops when a page comes back empty, or when the operation budget is used
    up after a page. A page that is being processed always completes, even if
    the budget runs out half way through it.

    Args:
        client: Platform client
        options: Run settings
        run: Optional run state; a fresh one is created from
            options.operations_per_run if not given

    Returns:
        The run state with the remaining budget and bookkeeping lists
    """
    if run is None:
        run = RunState(operations_left=options.operations_per_run)

    if options.debug_only:
        logger.warning(
            "Executing in debug mode. Debug output will be written but no items will be processed."
        )

    # The comma separated filter is handed to the client as a list of names,
    # the form both PyGithub and python-gitlab take for their labels parameter
    only_labels = parse_comma_separated_string(options.only_labels)
    page = 1

    while True:
        run.consume(1)
        items = client.get_items(page, ITEMS_PER_PAGE, only_labels)

        if not items:
            logger.info("No more items found to process. Exiting.")
            break

        for item in items:
            process_item(client, options, run, item)

        if run.operations_left <= 0:
            logger.warning("Reached max number of operations to process. Exiting.")
            break

        page += 1

    return run


# =============================================================================
# Configuration
# =============================================================================


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_config(config: dict) -> None:
    """
    Validate the configuration.

    Supports both GitHub and GitLab based on the 'platform' key. When
    platform is 'github' (default), requires a 'github' section with a token.
    When platform is 'gitlab', requires a 'gitlab' section.

    Args:
        config: Configuration dictionary to validate

    Raises:
        ConfigurationError: If required keys are missing or values are invalid
    """
    if not config:
        raise ConfigurationError("Configuration is empty")

    platform = config.get('platform', DEFAULT_PLATFORM)

    if platform not in ('gitlab', 'github'):
        raise ConfigurationError(
            f"Unsupported platform: '{platform}'. Must be 'gitlab' or 'github'."
        )

    if platform == 'github':
        if 'github' not in config:
            raise ConfigurationError("Missing 'github' section in configuration")
        if 'token' not in config['github']:
            raise ConfigurationError("Missing required GitHub config key: 'token'")
    else:
        if 'gitlab' not in config:
            raise ConfigurationError("Missing 'gitlab' section in configuration")
        for key in ['url', 'private_token']:
            if key not in config['gitlab']:
                raise ConfigurationError(f"Missing required GitLab config key: '{key}'")

    if not config.get('projects'):
        raise ConfigurationError("No projects configured. Add projects to the 'projects' list.")

    days_before_stale = config.get('days_before_stale', DEFAULT_DAYS_BEFORE_STALE)
    if not _is_number(days_before_stale) or days_before_stale <= 0:
        raise ConfigurationError(
            f"'days_before_stale' must be a positive number, got {days_before_stale!r}"
        )

    days_before_close = config.get('days_before_close', DEFAULT_DAYS_BEFORE_CLOSE)
    if not _is_number(days_before_close):
        raise ConfigurationError(
            f"'days_before_close' must be a number, got {days_before_close!r}"
        )

    operations_per_run = config.get('operations_per_run', DEFAULT_OPERATIONS_PER_RUN)
    if (not isinstance(operations_per_run, int) or isinstance(operations_per_run, bool)
            or operations_per_run < 1):
        raise ConfigurationError(
            f"'operations_per_run' must be a positive integer, got {operations_per_run!r}"
        )

    for key in ('stale_issue_label', 'stale_pr_label'):
        label = config.get(key, DEFAULT_STALE_LABEL)
        if not isinstance(label, str) or not label.strip():
            raise ConfigurationError(f"'{key}' must be a non-empty string, got {label!r}")

    for key in LABEL_LIST_KEYS:
        value = config.get(key)
        if value is None or isinstance(value, str):
            continue
        if not isinstance(value, list) or not all(isinstance(name, str) for name in value):
            raise ConfigurationError(
                f"'{key}' must be a comma separated string or a list of label names, got {value!r}"
            )

    for key in ('stale_issue_message', 'stale_pr_message'):
        message = config.get(key) or ''
        if not isinstance(message, str):
            raise ConfigurationError(f"'{key}' must be a string, got {message!r}")
        try:
            Template(message)
        except TemplateSyntaxError as e:
            raise ConfigurationError(f"Invalid template in '{key}': {e}") from e

    if not config.get('stale_issue_message') and not config.get('stale_pr_message'):
        logger.warning(
            "Neither 'stale_issue_message' nor 'stale_pr_message' is set. "
            "No items will be processed."
        )


def load_config(config_path: str) -> dict:
    """Load and validate configuration from a YAML file."""
    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)
    validate_config(config)
    return config


def _label_list_option(config: dict, key: str) -> str:
    """Get a label list option in comma separated form; YAML lists are joined."""
    value = config.get(key) or ''
    if isinstance(value, list):
        return ', '.join(value)
    return value


def build_options(config: dict, dry_run: bool = False) -> StaleOptions:
    """
    Build run settings from a validated configuration dictionary.

    Args:
        config: Configuration dictionary
        dry_run: If True, force debug mode regardless of the config

    Returns:
        StaleOptions for the run
    """
    return StaleOptions(
        stale_issue_message=config.get('stale_issue_message') or '',
        stale_pr_message=config.get('stale_pr_message') or '',
        stale_issue_label=config.get('stale_issue_label', DEFAULT_STALE_LABEL),
        stale_pr_label=config.get('stale_pr_label', DEFAULT_STALE_LABEL),
        exempt_issue_labels=_label_list_option(config, 'exempt_issue_labels'),
        exempt_pr_labels=_label_list_option(config, 'exempt_pr_labels'),
        days_before_stale=config.get('days_before_stale', DEFAULT_DAYS_BEFORE_STALE),
        days_before_close=config.get('days_before_close', DEFAULT_DAYS_BEFORE_CLOSE),
        only_labels=_label_list_option(config, 'only_labels'),
        operations_per_run=config.get('operations_per_run', DEFAULT_OPERATIONS_PER_RUN),
        remove_stale_when_updated=config.get(
            'remove_stale_when_updated', DEFAULT_REMOVE_STALE_WHEN_UPDATED
        ),
        debug_only=bool(dry_run or config.get('debug_only', DEFAULT_DEBUG_ONLY)),
    )


def create_github_client(config: dict) -> Github:
    """
    Create and authenticate a GitHub client.

    Args:
        config: Configuration dictionary with 'github' section

    Returns:
        Authenticated PyGithub Github client returning ITEMS_PER_PAGE items per page

    Raises:
        ConfigurationError: If authentication fails
    """
    token = config['github']['token']
    api_url = config['github'].get('api_url')
    kwargs = {'auth': Auth.Token(token), 'per_page': ITEMS_PER_PAGE}
    if api_url:
        kwargs['base_url'] = api_url
    try:
        gh = Github(**kwargs)
        # Verify authentication by fetching the authenticated user
        gh.get_user().login
    except GithubException as e:
        raise ConfigurationError(
            f"Failed to authenticate with GitHub: {e.data.get('message', str(e)) if hasattr(e, 'data') and e.data else str(e)}"
        ) from e
    return gh


def create_gitlab_client(config: dict) -> gitlab.Gitlab:
    """Create and authenticate a GitLab client."""
    gl = gitlab.Gitlab(
        url=config['gitlab']['url'],
        private_token=config['gitlab']['private_token']
    )
    try:
        gl.auth()
    except gitlab.exceptions.GitlabAuthenticationError as e:
        raise ConfigurationError(f"Failed to authenticate with GitLab: {e}") from e
    return gl


def create_platform_clients(config: dict) -> list:
    """
    Create one platform client per configured project.

    The platform connection is shared between the clients. The invoking
    actor is taken from the 'actor' key or the authenticated account.
    """
    platform = config.get('platform', DEFAULT_PLATFORM)
    projects = config.get('projects', [])

    if platform == 'gitlab':
        gl = create_gitlab_client(config)
        actor = config.get('actor') or gl.user.username
        return [issue_platforms.GitLabClient(gl, project, actor) for project in projects]

    gh = create_github_client(config)
    actor = config.get('actor') or gh.get_user().login
    return [issue_platforms.GitHubClient(gh, project, actor) for project in projects]


def _item_refs(items: List[dict]) -> List[dict]:
    return [
        {
            'number': item['number'],
            'title': item['title'],
            'item_type': item['item_type'],
            'web_url': item.get('web_url'),
        }
        for item in items
    ]


def run_stale_check(config: dict, dry_run: bool = False) -> dict:
    """
    Main function to process every configured project for staleness.

    Projects are processed one after another, each with its own operations
    budget. A platform error aborts the whole check.

    Args:
        config: Configuration dictionary
        dry_run: If True, don't comment, label or close anything

    Returns:
        Summary of the run
    """
    options = build_options(config, dry_run=dry_run)
    clients = create_platform_clients(config)

    summary = {
        'projects': [],
        'total_staled': 0,
        'total_closed': 0,
        'total_unstaled': 0,
        'dry_run': options.debug_only,
    }

    for client in clients:
        project_name = getattr(client, 'repo_name', None) or getattr(client, 'project_id', None)
        logger.info(f"Processing {client.platform} project {project_name}")

        run = process_items(client, options)

        summary['projects'].append({
            'project': project_name,
            'platform': client.platform,
            'staled_items': _item_refs(run.staled_items),
            'closed_items': _item_refs(run.closed_items),
            'unstaled_items': _item_refs(run.unstaled_items),
            'operations_left': run.operations_left,
        })
        summary['total_staled'] += len(run.staled_items)
        summary['total_closed'] += len(run.closed_items)
        summary['total_unstaled'] += len(run.unstaled_items)

    return summary


def _log_items(heading: str, items: List[dict]) -> None:
    if items:
        logger.info(heading)
        for item in items:
            logger.info(f"  - {item['item_type']} #{item['number']}: {item['title']} ({item['web_url']})")


def main() -> Optional[int]:
    """Main entry point for the script."""
    parser = argparse.ArgumentParser(
        description='Mark issues and pull/merge requests without recent activity as stale, '
                    'and close them if they stay inactive. '
                    'Supports both GitHub and GitLab platforms.'
    )
    parser.add_argument(
        '-c', '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Run the full decision logic without commenting, labelling or closing anything'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        logger.error(f"Configuration file not found: {args.config}")
        return 1
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in configuration file: {e}")
        return 1
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    try:
        summary = run_stale_check(config, dry_run=args.dry_run)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except (GithubException, gitlab.exceptions.GitlabError) as e:
        logger.error(f"Aborting run after platform error: {e}")
        return 1

    logger.info("=" * 50)
    logger.info("Stale Issue/PR Summary" + (" (dry run)" if summary['dry_run'] else ""))
    logger.info("=" * 50)
    for project in summary['projects']:
        logger.info(f"Project: {project['project']} ({project['platform']})")
        logger.info(f"  Marked stale: {len(project['staled_items'])}")
        logger.info(f"  Closed: {len(project['closed_items'])}")
        logger.info(f"  Stale label removed: {len(project['unstaled_items'])}")
        logger.info(f"  Operations left: {project['operations_left']}")
        _log_items("  Staled:", project['staled_items'])
        _log_items("  Closed:", project['closed_items'])
        _log_items("  Un-staled:", project['unstaled_items'])
    logger.info(f"Total marked stale: {summary['total_staled']}")
    logger.info(f"Total closed: {summary['total_closed']}")
    logger.info(f"Total stale labels removed: {summary['total_unstaled']}")

    return 0


if __name__ == '__main__':
    exit(main())
