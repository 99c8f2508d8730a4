"""Process helpers: descriptor paths, pid files and core dumps."""

from __future__ import annotations

import errno
import os
import resource

PROC_FD_PATH = "/proc/self/fd/"


def fd_to_path(fd: int) -> str:
    """Return the absolute path of the file open on descriptor ``fd``.

    The device and inode of the descriptor are checked against the
    ``/proc`` entry before the path is trusted.
    """
    if fd <= 0:
        raise ValueError("file descriptor must be positive")

    name = str(fd)
    if name not in os.listdir(PROC_FD_PATH):
        raise FileNotFoundError(errno.ENOENT, "no such open file descriptor", name)

    proc_path = PROC_FD_PATH + name
    fd_stat = os.fstat(fd)
    path_stat = os.stat(proc_path)

    if (fd_stat.st_dev, fd_stat.st_ino) != (path_stat.st_dev, path_stat.st_ino):
        raise OSError(errno.EINVAL, "descriptor does not match its /proc entry", proc_path)

    return os.path.realpath(proc_path)


def create_pidfile(path: str | os.PathLike[str]) -> None:
    """Write the current process id to ``path``, creating or replacing it."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o640)
    try:
        data = str(os.getpid()).encode("ascii")
        if os.write(fd, data) != len(data):
            raise OSError(errno.EIO, "pid could not be written", os.fspath(path))
    finally:
        os.close(fd)


def core_enable() -> None:
    """Raise the core file size limit to the allowed maximum."""
    _soft, hard = resource.getrlimit(resource.RLIMIT_CORE)
    resource.setrlimit(resource.RLIMIT_CORE, (hard, hard))