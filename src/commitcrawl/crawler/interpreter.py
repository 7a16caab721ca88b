"""Budget-bounded traversal of the repository/commit graph.

The traversal is a state machine driven by a queue of typed commands:

    FetchRepoPage -> PersistRecord, FetchRepoDetail | FetchCommitPage
    FetchRepoDetail -> PersistRecord, FetchCommitPage
    FetchCommitPage -> PersistRecord | FetchCommitDetail, then the next fetch
    FetchCommitDetail -> PersistRecord, then the next fetch
    Defer / Stop -> terminal

Detail fetches are optional. Without them a repository row carries only
what the listing has, and commit rows have no line counters.

Before a command is executed it passes through an ordered pipeline of
interceptors, each a function ``(command, state) -> (state, commands)``
that may replace it. The budget guard is one of them: it turns a fetch
that no longer fits the budget into a ``Defer`` carrying the exact
position of that fetch.

Records are written and committed before the next external call, so the
position of the next fetch is always the smallest unit of work not yet
durable.
"""

import logging
import sqlite3
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from commitcrawl.crawler.budget import RateBudget
from commitcrawl.crawler.database import CrawlDatabase
from commitcrawl.crawler.errors import CrawlerError, PlatformError, StorageError, TraversalError
from commitcrawl.crawler.github_client import GitHubClient
from commitcrawl.crawler.records import CommitRow, RepositoryRow, map_commit, map_repository

logger = logging.getLogger(__name__)

# Stands in for "no further commit page" when ordering positions
LAST_PAGE = 10 ** 9


class Phase(Enum):
    """Interpreter states."""

    SCANNING_REPOSITORIES = "scanning_repositories"
    FETCHING_REPOSITORY = "fetching_repository"
    FETCHING_COMMITS = "fetching_commits"
    COMPLETED = "completed"
    DEFERRED = "deferred"
    FAILED = "failed"


class Outcome(Enum):
    """Result of one execution."""

    COMPLETED = "completed"
    DEFERRED = "deferred"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def exit_code(self) -> int:
        return 1 if self is Outcome.FAILED else 0


@dataclass(frozen=True)
class RepoRef:
    """Just enough of a repository to page through its commits."""

    id: int
    full_name: str


@dataclass(frozen=True)
class ResumePosition:
    """Where a traversal picks up.

    Attributes:
        repository_id: Smallest repository id whose commits are not all stored.
        commit_page: Next commit page of the first queued repository, or
            None once its listing is exhausted and only ``shas`` remain.
        queue: Repositories of the current listing page still to scan, the
            one being paged first. Empty when the next call lists repositories.
        next_repository_id: First id of the listing page after ``queue``.
        repo_detail: The first queued repository's detail is not stored yet.
        shas: Listed commits of that repository whose detail is not stored yet.
    """

    repository_id: int
    commit_page: Optional[int] = 1
    queue: Tuple[RepoRef, ...] = ()
    next_repository_id: Optional[int] = None
    repo_detail: bool = False
    shas: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.queue and self.commit_page is None and not self.shas:
            raise ValueError("position has neither a commit page nor commits to fetch")

    @property
    def discriminator(self) -> str:
        return "commits" if self.queue else "repositories"

    @property
    def cursor(self) -> int:
        """Progress within ``repository_id``.

        Zero until the repository's detail is stored, then ordered by
        commit page and, within a page, by how few commit details are left.
        """
        if not self.queue or self.repo_detail:
            return 0
        page = LAST_PAGE if self.commit_page is None else self.commit_page
        return page * 1000 - len(self.shas)

    @property
    def progress(self) -> Tuple[int, int]:
        return self.repository_id, self.cursor

    def to_payload(self) -> Dict[str, Any]:
        return {
            "repository_id": self.repository_id,
            "commit_page": self.commit_page,
            "queue": [[ref.id, ref.full_name] for ref in self.queue],
            "next_repository_id": self.next_repository_id,
            "repo_detail": self.repo_detail,
            "shas": list(self.shas),
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ResumePosition":
        commit_page = payload.get("commit_page", 1)
        return cls(
            repository_id=int(payload["repository_id"]),
            commit_page=None if commit_page is None else int(commit_page),
            queue=tuple(RepoRef(int(i), name) for i, name in payload.get("queue", [])),
            next_repository_id=payload.get("next_repository_id"),
            repo_detail=bool(payload.get("repo_detail", False)),
            shas=tuple(payload.get("shas", ())),
        )


# Commands


@dataclass(frozen=True)
class FetchRepoPage:
    start_id: int  # inclusive


@dataclass(frozen=True)
class FetchRepoDetail:
    repo: RepoRef


@dataclass(frozen=True)
class FetchCommitPage:
    repo: RepoRef
    page: int


@dataclass(frozen=True)
class FetchCommitDetail:
    repo: RepoRef
    sha: str


@dataclass(frozen=True)
class PersistRecord:
    records: Tuple[Union[RepositoryRow, CommitRow], ...]


@dataclass(frozen=True)
class Defer:
    position: ResumePosition


@dataclass(frozen=True)
class Stop:
    pass


Command = Union[
    FetchRepoPage, FetchRepoDetail, FetchCommitPage, FetchCommitDetail, PersistRecord, Defer, Stop
]
Fetch = (FetchRepoPage, FetchRepoDetail, FetchCommitPage, FetchCommitDetail)


@dataclass(frozen=True)
class CrawlState:
    """Traversal state between commands.

    ``shas`` and ``next_commit_page`` describe the current commit page
    while its details are being fetched.
    """

    phase: Phase
    next_repository_id: int
    pending: Tuple[RepoRef, ...] = ()
    shas: Tuple[str, ...] = ()
    next_commit_page: Optional[int] = None
    repo_details: bool = False
    commit_details: bool = False
    calls: int = 0
    repositories_written: int = 0
    commits_written: int = 0


@dataclass
class CrawlResult:
    """What the interpreter hands back to the orchestrator.

    ``position`` is the continuation for DEFERRED, and the last durable
    boundary for FAILED.
    """

    outcome: Outcome
    position: Optional[ResumePosition] = None
    error: Optional[BaseException] = None
    calls: int = 0
    repositories_written: int = 0
    commits_written: int = 0


Interceptor = Callable[[Command, CrawlState], Optional[Tuple[CrawlState, List[Command]]]]


def position_for(command: Command, state: CrawlState) -> ResumePosition:
    """Resume position that would re-issue ``command`` first."""
    if isinstance(command, FetchRepoPage):
        return ResumePosition(repository_id=command.start_id)
    if not isinstance(command, Fetch):
        raise TypeError(f"{type(command).__name__} has no traversal position")

    queue = (command.repo,) + state.pending
    if isinstance(command, FetchRepoDetail):
        return ResumePosition(
            repository_id=command.repo.id,
            queue=queue,
            next_repository_id=state.next_repository_id,
            repo_detail=True,
        )
    if isinstance(command, FetchCommitPage):
        return ResumePosition(
            repository_id=command.repo.id,
            commit_page=command.page,
            queue=queue,
            next_repository_id=state.next_repository_id,
        )
    return ResumePosition(
        repository_id=command.repo.id,
        commit_page=state.next_commit_page,
        queue=queue,
        next_repository_id=state.next_repository_id,
        shas=(command.sha,) + state.shas,
    )


def initial_plan(
    position: ResumePosition, repo_details: bool = False, commit_details: bool = False
) -> Tuple[CrawlState, List[Command]]:
    """State and first command for a traversal starting at ``position``.

    A position saved mid-repository is honoured as is, even if the detail
    switches changed since it was saved.
    """
    state = CrawlState(
        phase=Phase.SCANNING_REPOSITORIES,
        next_repository_id=position.repository_id,
        repo_details=repo_details,
        commit_details=commit_details,
    )
    if not position.queue:
        return state, [FetchRepoPage(position.repository_id)]

    first, rest = position.queue[0], position.queue[1:]
    next_id = position.next_repository_id
    if next_id is None:
        next_id = position.queue[-1].id + 1
    state = replace(
        state, phase=Phase.FETCHING_COMMITS, next_repository_id=next_id, pending=rest
    )

    if position.repo_detail:
        return replace(state, phase=Phase.FETCHING_REPOSITORY), [FetchRepoDetail(first)]
    if position.shas:
        state = replace(state, shas=position.shas[1:], next_commit_page=position.commit_page)
        return state, [FetchCommitDetail(first, position.shas[0])]
    return state, [FetchCommitPage(first, position.commit_page)]


def visit_repository(state: CrawlState, repo: RepoRef) -> Tuple[CrawlState, List[Command]]:
    """First fetch for a repository taken off the queue."""
    if state.repo_details:
        return replace(state, phase=Phase.FETCHING_REPOSITORY), [FetchRepoDetail(repo)]
    return replace(state, phase=Phase.FETCHING_COMMITS), [FetchCommitPage(repo, 1)]


def advance_repository(state: CrawlState) -> Tuple[CrawlState, List[Command]]:
    """Move to the next queued repository, or list the next page."""
    state = replace(state, shas=(), next_commit_page=None)
    if state.pending:
        nxt, rest = state.pending[0], state.pending[1:]
        return visit_repository(replace(state, pending=rest), nxt)
    return (
        replace(state, phase=Phase.SCANNING_REPOSITORIES),
        [FetchRepoPage(state.next_repository_id)],
    )


def plan_repo_page(
    state: CrawlState, command: FetchRepoPage, repos: List[Dict[str, Any]]
) -> Tuple[CrawlState, List[Command]]:
    """Plan the work for a fetched repository listing page."""
    if not repos:
        return replace(state, phase=Phase.COMPLETED), [Stop()]

    rows = sorted((map_repository(r) for r in repos), key=lambda r: r.id)
    if rows[0].id < command.start_id:
        raise ValueError(
            f"Listing from {command.start_id} returned repository {rows[0].id}"
        )
    refs = tuple(RepoRef(row.id, row.full_name) for row in rows)
    state = replace(state, pending=refs[1:], next_repository_id=rows[-1].id + 1)
    state, following = visit_repository(state, refs[0])
    return state, [PersistRecord(tuple(rows))] + following


def plan_repo_detail(
    state: CrawlState, command: FetchRepoDetail, detail: Optional[Dict[str, Any]]
) -> Tuple[CrawlState, List[Command]]:
    """Plan the work for a fetched repository object.

    A repository that vanished since it was listed has no commits to page.
    """
    if detail is None:
        return advance_repository(state)

    row = map_repository(detail)
    if row.id != command.repo.id:
        raise ValueError(f"Asked for repository {command.repo.id}, got {row.id}")
    state = replace(state, phase=Phase.FETCHING_COMMITS)
    return state, [PersistRecord((row,)), FetchCommitPage(RepoRef(row.id, row.full_name), 1)]


def plan_commit_page(
    state: CrawlState,
    command: FetchCommitPage,
    commits: List[Dict[str, Any]],
    page_size: int,
) -> Tuple[CrawlState, List[Command]]:
    """Plan the work for a fetched commit page.

    With commit details on, the listed commits are not written here: each
    is written once its detail arrives.
    """
    rows = tuple(map_commit(c, command.repo.id) for c in commits)
    next_page = command.page + 1 if len(commits) >= page_size else None

    if state.commit_details and rows:
        shas = tuple(row.sha for row in rows)
        state = replace(state, shas=shas[1:], next_commit_page=next_page)
        return state, [FetchCommitDetail(command.repo, shas[0])]

    commands: List[Command] = [PersistRecord(rows)] if rows else []
    if next_page is not None:
        return state, commands + [FetchCommitPage(command.repo, next_page)]

    state, following = advance_repository(state)
    return state, commands + following


def plan_commit_detail(
    state: CrawlState, command: FetchCommitDetail, detail: Optional[Dict[str, Any]]
) -> Tuple[CrawlState, List[Command]]:
    """Plan the work for a fetched commit object."""
    commands: List[Command] = []
    if detail is not None:
        row = map_commit(detail, command.repo.id)
        if row.sha != command.sha:
            raise ValueError(f"Asked for commit {command.sha}, got {row.sha}")
        commands.append(PersistRecord((row,)))
    else:
        logger.warning("Commit %s of %s vanished; not stored", command.sha, command.repo.full_name)

    if state.shas:
        nxt = state.shas[0]
        return replace(state, shas=state.shas[1:]), commands + [FetchCommitDetail(command.repo, nxt)]
    if state.next_commit_page is not None:
        page = state.next_commit_page
        return replace(state, next_commit_page=None), commands + [FetchCommitPage(command.repo, page)]

    state, following = advance_repository(state)
    return state, commands + following


class CrawlInterpreter:
    """Runs one budget-bounded slice of the traversal.

    Single-threaded: exactly one external call is in flight at a time, and
    its response is fully processed before the next one is issued.
    """

    def __init__(
        self,
        client: GitHubClient,
        db: CrawlDatabase,
        budget: RateBudget,
        repo_page_size: int = 100,
        commit_page_size: int = 100,
        repo_details: bool = True,
        commit_details: bool = True,
    ):
        self.client = client
        self.db = db
        self.budget = budget
        self.repo_page_size = repo_page_size
        self.commit_page_size = commit_page_size
        self.repo_details = repo_details
        self.commit_details = commit_details
        self.interceptors: List[Interceptor] = [self.budget_guard]

    def budget_guard(
        self, command: Command, state: CrawlState
    ) -> Optional[Tuple[CrawlState, List[Command]]]:
        """Defer any fetch that no longer fits the budget."""
        if not isinstance(command, Fetch):
            return None
        if self.budget.can_spend(1):
            return None
        position = position_for(command, state)
        logger.info(
            "Budget exhausted (%d remaining, floor %d); deferring at repository %d",
            self.budget.remaining(), self.budget.floor, position.repository_id,
        )
        return replace(state, phase=Phase.DEFERRED), [Defer(position)]

    async def run(self, start: ResumePosition) -> CrawlResult:
        state, initial = initial_plan(start, self.repo_details, self.commit_details)
        queue = deque(initial)
        checkpoint = start

        while queue:
            command = queue.popleft()

            intercepted = self._intercept(command, state)
            if intercepted is not None:
                state, replacement = intercepted
                queue.extendleft(reversed(replacement))
                continue

            if isinstance(command, Defer):
                if command.position.progress < start.progress:
                    return self._failed(
                        state, checkpoint, TraversalError("continuation would move the scan backwards")
                    )
                return self._result(Outcome.DEFERRED, state, position=command.position)
            if isinstance(command, Stop):
                return self._result(Outcome.COMPLETED, state)

            if isinstance(command, Fetch):
                checkpoint = position_for(command, state)

            try:
                state, following = await self._execute(command, state)
            except CrawlerError as e:
                return self._failed(state, checkpoint, e)
            queue.extendleft(reversed(following))

        # Every plan ends in a fetch, Defer or Stop
        return self._failed(
            state, checkpoint, TraversalError("command queue drained without a terminal command")
        )

    def _intercept(
        self, command: Command, state: CrawlState
    ) -> Optional[Tuple[CrawlState, List[Command]]]:
        for interceptor in self.interceptors:
            result = interceptor(command, state)
            if result is not None:
                return result
        return None

    async def _execute(
        self, command: Command, state: CrawlState
    ) -> Tuple[CrawlState, List[Command]]:
        if isinstance(command, Fetch):
            self._charge()
            data = await self._fetch(command)
            state = replace(state, calls=state.calls + 1)
            try:
                return self._plan(state, command, data)
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                raise PlatformError(f"Malformed response to {command}: {e}") from e

        if isinstance(command, PersistRecord):
            repos = [r for r in command.records if isinstance(r, RepositoryRow)]
            commits = [r for r in command.records if isinstance(r, CommitRow)]
            try:
                repo_count = await self.db.upsert_repositories(repos)
                commit_count = await self.db.insert_commits(commits)
            except sqlite3.Error as e:
                raise StorageError(f"Failed to persist {len(command.records)} records: {e}") from e
            return (
                replace(
                    state,
                    repositories_written=state.repositories_written + repo_count,
                    commits_written=state.commits_written + commit_count,
                ),
                [],
            )

        raise TraversalError(f"Unknown command: {command!r}")

    async def _fetch(self, command: Command) -> Any:
        if isinstance(command, FetchRepoPage):
            repos = await self.client.list_repositories(
                since=max(command.start_id - 1, 0), per_page=self.repo_page_size
            )
            logger.debug("Repository page from %d: %d repositories", command.start_id, len(repos))
            return repos
        if isinstance(command, FetchRepoDetail):
            return await self.client.get_repository(command.repo.full_name)
        if isinstance(command, FetchCommitPage):
            commits = await self.client.list_commits(
                command.repo.full_name, page=command.page, per_page=self.commit_page_size
            )
            logger.debug(
                "Commit page %d of %s: %d commits", command.page, command.repo.full_name, len(commits)
            )
            return commits
        return await self.client.get_commit(command.repo.full_name, command.sha)

    def _plan(self, state: CrawlState, command: Command, data: Any) -> Tuple[CrawlState, List[Command]]:
        if isinstance(command, FetchRepoPage):
            return plan_repo_page(state, command, data)
        if isinstance(command, FetchRepoDetail):
            return plan_repo_detail(state, command, data)
        if isinstance(command, FetchCommitPage):
            return plan_commit_page(state, command, data, self.commit_page_size)
        return plan_commit_detail(state, command, data)

    def _charge(self) -> None:
        # The guard already checked; a refusal here means a second spender.
        if not self.budget.charge(1):
            raise TraversalError("fetch issued past a budget refusal")

    def _failed(
        self, state: CrawlState, checkpoint: ResumePosition, error: CrawlerError
    ) -> CrawlResult:
        logger.error("Traversal failed at repository %d: %s", checkpoint.repository_id, error)
        return self._result(
            Outcome.FAILED, replace(state, phase=Phase.FAILED), position=checkpoint, error=error
        )

    def _result(
        self,
        outcome: Outcome,
        state: CrawlState,
        position: Optional[ResumePosition] = None,
        error: Optional[BaseException] = None,
    ) -> CrawlResult:
        return CrawlResult(
            outcome=outcome,
            position=position,
            error=error,
            calls=state.calls,
            repositories_written=state.repositories_written,
            commits_written=state.commits_written,
        )
