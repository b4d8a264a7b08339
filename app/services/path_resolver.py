import os
import posixpath


def join(base: str, *names: str) -> str:
    """Join base with client supplied path segments without leaving base.

    Each segment is cleaned on its own as if it were rooted at "/", so ".."
    and "." collapse to nothing and absolute segments lose their leading
    slash. The filesystem is never touched.
    """
    parts = [base]
    for name in names:
        name = posixpath.normpath("/" + name).lstrip("/")
        if name:
            parts.append(name)
    return os.path.join(*parts)


def is_user_path(username: str, path: str) -> bool:
    """Check if path belongs to username, i.e. is /username or below it."""
    prefix = "/" + username
    if not path.startswith(prefix):
        return False
    return len(path) == len(prefix) or path[len(prefix)] == "/"
