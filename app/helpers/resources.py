from os.path import dirname, join
from pathlib import Path

from app.helpers.cache import lru_cache


@lru_cache()  # Resources are shipped with the package and never change at runtime
def resources_dir(folder: str) -> str:
    """
    Get the absolute path to a resources folder.
    """
    return join(_local_dir("resources"), folder)


def _local_dir(folder: str) -> str:
    """
    Get the absolute path to a folder of the `app` package, whatever the working directory.
    """
    return str(Path(join(dirname(dirname(__file__)), folder)).resolve().absolute())
