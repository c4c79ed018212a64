"""Tests for git output parsing and command construction."""

from unittest.mock import MagicMock

import pytest
import yaml
from invoke import Result

from branchwarden.core.result import ErrorKind, Outcome
from branchwarden.core.yaml_settings import DEFAULTS_FILE
from branchwarden.git.backend import (
    GitGateway,
    classify_failure,
    parse_branches,
    parse_remote_branches,
    parse_remotes,
    parse_status,
)
from branchwarden.state.merge import MergeStrategy, OperationKind


def test_parse_status_clean():
    status = parse_status("## main...origin/main\n")
    assert status.current_branch == "main"
    assert not status.dirty
    assert status.conflicts == []


def test_parse_status_ahead_and_modified():
    status = parse_status(
        "## feature/x...origin/feature/x [ahead 2]\n"
        " M src/app.py\n"
        "?? notes.txt\n"
    )
    assert status.current_branch == "feature/x"
    assert status.dirty


def test_parse_status_untracked_only_is_clean():
    status = parse_status("## main\n?? scratch.py\n!! build/\n")
    assert status.current_branch == "main"
    assert not status.dirty


def test_parse_status_conflicts():
    status = parse_status(
        "## main\n"
        "UU src/app.py\n"
        "AA docs/new.md\n"
        "M  README.md\n"
    )
    assert status.conflicts == ["src/app.py", "docs/new.md"]
    assert status.dirty


@pytest.mark.parametrize("header,branch", [
    ("## HEAD (no branch)", None),
    ("## No commits yet on main", "main"),
    ("## Initial commit on trunk", "trunk"),
])
def test_parse_status_special_heads(header, branch):
    assert parse_status(header + "\n").current_branch == branch


def test_parse_branches():
    output = (
        "main\taaa\torigin\trefs/heads/main\t\n"
        "feature\tbbb\torigin\trefs/heads/Feature\tahead 2, behind 1\n"
        "old\tccc\torigin\trefs/heads/old\tgone\n"
        "local\tddd\t\t\t\n"
    )

    main, feature, old, local = parse_branches(output)

    assert (main.upstream_remote, main.upstream_branch) == ("origin", "main")
    assert feature.upstream_branch == "Feature"
    assert (feature.ahead, feature.behind) == (2, 1)
    assert old.upstream_gone
    assert local.upstream_remote is None
    assert local.upstream_branch is None


def test_parse_remotes():
    output = (
        "origin\thttps://example.com/repo.git (fetch)\n"
        "origin\thttps://example.com/repo.git (push)\n"
        "fork\tgit@example.com:me/repo.git (fetch)\n"
    )
    remotes = parse_remotes(output)
    assert [r.name for r in remotes] == ["origin", "fork"]
    assert remotes[0].url == "https://example.com/repo.git"


def test_parse_remote_branches_prefers_longest_remote():
    output = (
        "refs/remotes/up/main\t111\n"
        "refs/remotes/up/stream/main\t222\n"
        "refs/remotes/up/HEAD\t111\n"
    )

    refs = parse_remote_branches(output, ["up", "up/stream"])

    assert [(r.remote, r.name, r.tip) for r in refs] == [
        ("up", "main", "111"),
        ("up/stream", "main", "222"),
    ]


@pytest.mark.parametrize("stderr,kind", [
    ("fatal: unable to access 'https://x/': Could not resolve host: x",
     ErrorKind.BACKEND_UNAVAILABLE),
    ("! [rejected]        main -> main (non-fast-forward)",
     ErrorKind.REJECTED),
    ("error: pathspec 'nope' did not match any file(s) known to git",
     ErrorKind.NOT_FOUND),
    ("fatal: something else entirely", ErrorKind.COMMAND_FAILED),
])
def test_classify_failure(stderr, kind):
    assert classify_failure(stderr) is kind


# ------------------------------------------------------------------
# Command construction against a mocked runner


def result(stdout="", stderr="", exited=0):
    return Result(stdout=stdout, stderr=stderr, exited=exited)


@pytest.fixture
def commands():
    data = yaml.safe_load(DEFAULTS_FILE.read_text())
    return data["config"]["commands"]["git"]


@pytest.fixture
def runner():
    runner = MagicMock()
    runner.execute.return_value = result()
    return runner


@pytest.fixture
def git(tmp_path, commands, runner):
    return GitGateway(tmp_path, commands, runner=runner)


def executed(runner):
    return [call.args[0] for call in runner.execute.call_args_list]


def test_values_are_shell_quoted(git, runner):
    git.commit("fix: it's done; rm -rf /")

    (command,) = executed(runner)
    assert "'fix: it'\"'\"'s done; rm -rf /'" in command


@pytest.mark.parametrize("strategy,expected", [
    (MergeStrategy.FAST_FORWARD, "git merge --ff --no-edit feature"),
    (MergeStrategy.NO_FAST_FORWARD, "git merge --no-ff --no-edit feature"),
    (MergeStrategy.REBASE, "git rebase feature"),
])
def test_merge_commands(git, runner, strategy, expected):
    git.merge("feature", strategy)
    assert executed(runner) == [expected]


def test_squash_merge_commits(git, runner):
    git.merge("feature", MergeStrategy.SQUASH)
    assert executed(runner)[0].startswith("git merge --squash feature && ")


def test_push_flags(git, runner):
    runner.execute.side_effect = [
        result("feature\tabc\tupstream\trefs/heads/feature\t\n"),
        result(),
    ]

    git.push("feature", set_upstream=True, force=True)

    assert executed(runner)[-1] == (
        "git push --set-upstream --force-with-lease upstream feature"
    )


def test_push_defaults_to_configured_remote(git, runner):
    runner.execute.side_effect = [result("feature\tabc\t\t\t\n"), result()]

    git.push("feature")

    assert executed(runner)[-1] == "git push  origin feature"


def test_revert_of_merge_commit_uses_mainline(git, runner):
    runner.execute.side_effect = [result("m p1 p2\n"), result()]

    git.revert("m", mainline_parent=2)

    assert executed(runner)[-1] == "git revert --no-edit --mainline 2 m"


def test_revert_of_plain_commit(git, runner):
    runner.execute.side_effect = [result("c p1\n"), result()]

    git.revert("c")

    assert executed(runner)[-1] == "git revert --no-edit  c"


def test_failed_mutation_with_unmerged_paths_is_conflict(git, runner):
    runner.execute.side_effect = [
        result(stderr="CONFLICT (content)", exited=1),
        result("src/app.py\nREADME.md\n"),
    ]

    outcome = git.merge("main", MergeStrategy.NO_FAST_FORWARD)

    assert outcome.outcome is Outcome.CONFLICT
    assert outcome.conflicts == ["src/app.py", "README.md"]


def test_failed_mutation_without_unmerged_paths(git, runner):
    runner.execute.side_effect = [
        result(stderr="error: pathspec 'x' did not match any", exited=1),
        result(""),
    ]

    outcome = git.checkout("x")

    assert outcome.outcome is Outcome.FAILURE
    assert outcome.error_kind is ErrorKind.NOT_FOUND


def test_timed_out_command_is_backend_unavailable(git, runner):
    runner.execute.return_value = result(exited=-1)

    outcome = git.fetch()

    assert outcome.error_kind is ErrorKind.BACKEND_UNAVAILABLE
    assert len(executed(runner)) == 1


def test_rev_parse_missing_ref(git, runner):
    runner.execute.return_value = result(exited=1)
    outcome = git.rev_parse("nope")
    assert outcome.ok
    assert outcome.value is None


def test_ahead_behind(git, runner):
    runner.execute.return_value = result("3\t1\n")
    assert git.ahead_behind("feature", "main").value == (3, 1)


def test_continue_stages_paths_first(git, runner):
    git.continue_operation(OperationKind.REVERT, ["a b.txt", "c.txt"])

    assert executed(runner) == [
        "git add -- 'a b.txt' c.txt",
        "git -c core.editor=true revert --continue",
    ]


@pytest.mark.parametrize("kind,expected", [
    (OperationKind.MERGE, "git merge --abort"),
    (OperationKind.REBASE, "git rebase --abort"),
    (OperationKind.REVERT, "git revert --abort"),
    (OperationKind.SQUASH, "git reset --merge"),
])
def test_abort_commands(git, runner, kind, expected):
    git.abort(kind)
    assert executed(runner) == [expected]


def test_squash_left_in_tree_is_detected(git, runner, tmp_path):
    git_dir = tmp_path / ".git"
    git_dir.mkdir()
    (git_dir / "SQUASH_MSG").write_text("Squashed commit of the following:\n")
    runner.execute.return_value = result(f"{git_dir}\n")

    assert git._operation_in_progress() is OperationKind.SQUASH


@pytest.mark.parametrize("force,expected", [
    (False, ["git", "branch", "--move", "feature-x", "Feature-X"]),
    (True, ["git", "branch", "--move", "--force", "feature-x", "Feature-X"]),
])
def test_rename_forces_only_when_asked(git, runner, force, expected):
    git.rename_branch("feature-x", "Feature-X", force=force)

    (command,) = executed(runner)
    assert command.split() == expected
