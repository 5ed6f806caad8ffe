import errno
import os


def mkdir_p(path: str):
    """
    Creates a directory and all its parents if it doesn't exist
    :param path: directory path
    """
    try:
        os.makedirs(path)
    except OSError as exc:
        if exc.errno == errno.EEXIST and os.path.isdir(path):
            pass
        else:
            raise


def ensure_parent_dir_exists(file_path: str) -> None:
    """ Ensure that the parent directory for the file exists """
    parent_dir, _ = os.path.split(file_path)
    if parent_dir:
        mkdir_p(parent_dir)


def expand_path(*file_path_parts) -> str:
    """ Expand the user directory and join the parts """
    file_path = os.path.join(*file_path_parts)
    file_path = os.path.abspath(os.path.expanduser(file_path))
    return file_path
