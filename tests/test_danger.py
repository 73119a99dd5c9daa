"""Tests for shell command danger classification."""

import pytest

from chatcoord.danger import classify_command, is_dangerous, split_commands


class TestSplitCommands:
    """Tokenizing command lines into sub-commands."""

    def test_chain_operators(self):
        """;, &&, ||, | and & all separate commands."""
        assert split_commands("a; b && c || d | e & f") == ["a", "b", "c", "d", "e", "f"]

    def test_newlines_separate(self):
        """Multi-line scripts are split per line."""
        assert split_commands("cd repo\ngit status") == ["cd repo", "git status"]

    def test_quoted_separators_are_literal(self):
        """Separators inside quotes do not split."""
        assert split_commands("echo 'a; b' && echo \"c | d\"") == ["echo a; b", "echo c | d"]

    def test_escaped_separator(self):
        """A backslash-escaped separator is literal."""
        assert split_commands("echo a\\; rm x") == ["echo a; rm x"]

    def test_redirection_is_not_background(self):
        """2>&1 and &> stay inside the command."""
        assert split_commands("make 2>&1 | tee log") == ["make 2>&1", "tee log"]
        assert split_commands("make &>build.log") == ["make &>build.log"]

    def test_command_substitution(self):
        """$(...) and backtick bodies become sub-commands after the top level."""
        assert split_commands("echo $(rm -rf /tmp/x) done") == ["echo  done", "rm -rf /tmp/x"]
        assert split_commands("echo `git push`") == ["echo", "git push"]

    def test_nested_substitution(self):
        """Substitutions are split recursively."""
        assert split_commands("x=$(a; $(b))") == ["x=", "a", "b"]

    def test_substitution_inside_double_quotes(self):
        """Double quotes do not protect substitutions."""
        assert split_commands('echo "$(git reset --hard)"') == ["echo", "git reset --hard"]

    def test_single_quotes_protect_substitution(self):
        """Single-quoted text is never executed."""
        assert split_commands("echo '$(rm -rf /)'") == ["echo $(rm -rf /)"]


class TestClassifyCommand:
    """Matching sub-commands against the danger rules."""

    @pytest.mark.parametrize("command", [
        "git push origin main",
        "git -C repo push",
        "git checkout -- .",
        "git reset --hard HEAD~1",
        "git rebase main",
        "git merge feature",
        "docker rm web",
        "podman stop db",
        "docker restart api",
        "rm -rf build",
        "del /f file.txt",
        "taskkill /IM python.exe",
    ])
    def test_dangerous_commands(self, command):
        """Each destructive operation is flagged."""
        assert is_dangerous(command)

    @pytest.mark.parametrize("command", [
        "git status",
        "git log --oneline",
        "docker ps",
        "echo 'git push'",
        "grep -r rm src",
        "ls -la",
        "",
    ])
    def test_safe_commands(self, command):
        """Reads and quoted mentions are safe."""
        assert not is_dangerous(command)

    def test_chained_danger_is_found(self):
        """A dangerous command anywhere in a chain flags the whole line."""
        assessment = classify_command("git status && git push --force")

        assert assessment.dangerous
        assert [(m.sub_command, m.rule) for m in assessment.matches] == [
            ("git push --force", "git push")
        ]

    def test_wrappers_and_assignments_are_stripped(self):
        """sudo, env assignments and similar prefixes do not hide a command."""
        assert is_dangerous("GIT_SSH=ssh sudo git push")
        assert is_dangerous("nohup rm -rf /var/tmp/cache &")
        assert is_dangerous("time docker stop web")

    def test_hidden_in_substitution(self):
        """Destructive substitutions are caught."""
        assessment = classify_command("echo $(git reset --hard)")

        assert assessment.dangerous
        assert assessment.matches[0].rule == "git reset"

    def test_background_job(self):
        """Background separators split like any other."""
        assert is_dangerous("sleep 5 & rm -f lock")
