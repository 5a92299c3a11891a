"""Tests for git URL normalization."""

import pytest

from bundle_tool.snapshot.git import clean_git_url, is_known_git_host


@pytest.mark.parametrize(
    "url, expected",
    [
        ("git+https://github.com/example/operator.git", "https://github.com/example/operator"),
        ("https://github.com/example/operator/", "https://github.com/example/operator"),
        ("git@gitlab.com:group/project.git", "https://gitlab.com/group/project"),
        ("ssh://git@github.com/org/repo.git", "https://github.com/org/repo"),
        ("ssh://bitbucket.org/team/repo", "https://bitbucket.org/team/repo"),
        ("http://gitea.example.com/org/repo.git", "https://gitea.example.com/org/repo"),
        ("github.com/org/repo", "https://github.com/org/repo"),
        (
            "https://dev.azure.com/org/project/_git/repo",
            "https://dev.azure.com/org/project/_git/repo",
        ),
        (
            "git@ssh.dev.azure.com:v3/org/project/repo",
            "https://ssh.dev.azure.com/v3/org/project/repo",
        ),
        ("https://org.visualstudio.com/_git/repo/", "https://org.visualstudio.com/_git/repo"),
    ],
)
def test_clean_git_url(url, expected):
    assert clean_git_url(url) == expected


@pytest.mark.parametrize(
    "url",
    ["", "example.com/org/repo", "file:///srv/git/repo", "not a url"],
)
def test_unrecognized_urls_are_returned_unchanged(url):
    assert clean_git_url(url) == url


def test_git_plus_prefix_is_always_dropped():
    assert clean_git_url("git+file:///srv/git/repo") == "file:///srv/git/repo"


@pytest.mark.parametrize(
    "host, known",
    [
        ("github.com", True),
        ("gitlab.example.com", True),
        ("bitbucket.org", True),
        ("dev.azure.com", True),
        ("codeberg.org", True),
        ("git-codecommit.us-east-1.amazonaws.com", True),
        ("example.com", False),
        ("s3.amazonaws.com", False),
    ],
)
def test_is_known_git_host(host, known):
    assert is_known_git_host(host) is known
