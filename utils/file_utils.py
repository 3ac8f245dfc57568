import os
from typing import Dict, Sequence

from utils.date_utils import get_now_datetime_as_string

_DEFAULT_DATA_DIR = os.path.join(os.getcwd(), "results")


def ensure_path(*file_path_parts) -> str:
    """ Absolute, user expanded path of a file we are about to write, its directory exists afterwards """
    file_path = os.path.abspath(os.path.expanduser(os.path.join(*file_path_parts)))
    parent_dir = os.path.dirname(file_path)
    if parent_dir:
        os.makedirs(parent_dir, exist_ok=True)
    return file_path


def easy_filename(
        slug: str,
        where: str = _DEFAULT_DATA_DIR,
        ext: str = "",
        stamp: str = "",
) -> str:
    """ Timestamped filename for run outputs, e.g. keyframe_trajectory_2022-06-11--12-21-37.txt """
    if '.' in slug and len(ext) > 0:
        raise ValueError("Slug should not contain an extension if you are specifying one")

    if '.' in slug:
        slug, ext = slug.split('.')

    stamp = stamp or get_now_datetime_as_string()
    extension_or_none = f".{ext}" if len(ext) > 0 else ""
    return ensure_path(where, f"{slug}_{stamp}" + extension_or_none)


def run_output_paths(slugs: Sequence[str], where: str = _DEFAULT_DATA_DIR) -> Dict[str, str]:
    """ One easy_filename per slug, all sharing the same timestamp so the files of a run sort together """
    stamp = get_now_datetime_as_string()
    return {slug: easy_filename(slug, where, stamp=stamp) for slug in slugs}
