import os
import random
import sys

import pytest

# Add the parent directory to sys.path so we can import the app package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app.services.path_resolver import is_user_path, join


@pytest.mark.parametrize("base, names, result", [
    ("/", ["foo", "bar"], "/foo/bar"),
    ("/srv/server", ["foo", "bar"], "/srv/server/foo/bar"),
    ("/srv/server", ["foo", "..", "bar"], "/srv/server/foo/bar"),
    ("/srv/server", ["..", "bar"], "/srv/server/bar"),
    ("/srv/server", [".."], "/srv/server"),
    ("/srv/server", ["..", ".."], "/srv/server"),
    ("/srv/server", ["repo", "data"], "/srv/server/repo/data"),
    ("/srv/server", ["repo", "data", "..", ".."], "/srv/server/repo/data"),
    ("/srv/server", ["repo", "data", "..", "data", "..", "..", ".."], "/srv/server/repo/data/data"),
    ("/srv/server", ["", ".", "repo"], "/srv/server/repo"),
    ("/srv/server", ["/etc/passwd"], "/srv/server/etc/passwd"),
    ("/srv/server", ["../../etc"], "/srv/server/etc"),
    ("/srv/server", ["repo/../../.."], "/srv/server"),
])
def test_join(base, names, result):
    assert join(base, *names) == result


def test_join_never_escapes_base():
    """Random segment sequences always stay inside the base."""
    rng = random.Random(1234)
    pool = ["..", ".", "", "a", "b", "../..", "/", "//x", "a/../../..", "../c"]
    base = "/srv/server"
    for _ in range(500):
        names = [rng.choice(pool) for _ in range(rng.randint(0, 8))]
        result = join(base, *names)
        assert result == base or result.startswith(base + "/"), names
        assert os.path.normpath(result) == result or result == base
        # pure function
        assert join(base, *names) == result


@pytest.mark.parametrize("username, path, result", [
    ("foo", "/", False),
    ("foo", "/foo", True),
    ("foo", "/foo/", True),
    ("foo", "/foo/bar", True),
    ("foo", "/foobar", False),
    ("foo", "/bar/foo", False),
])
def test_is_user_path(username, path, result):
    assert is_user_path(username, path) == result
