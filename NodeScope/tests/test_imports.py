import os
import importlib
import pytest
from pathlib import Path


def get_all_python_files(root_dir):
    python_files = []
    for root, dirs, files in os.walk(root_dir):
        # Skip hidden directories, caches and the test suite itself
        dirs[:] = [d for d in dirs if not d.startswith('.') and d not in ('__pycache__', 'tests')]

        for file in files:
            if file.endswith('.py'):
                python_files.append(os.path.join(root, file))
    return sorted(python_files)


def path_to_module(path, root_dir):
    rel_path = os.path.relpath(path, root_dir)
    if rel_path.startswith('..'):
        return None

    module_name = os.path.splitext(rel_path)[0].replace(os.path.sep, '.')

    if module_name.endswith('.__init__'):
        module_name = module_name[:-9]

    return module_name


# The package directory is one level up from tests/; modules are imported by
# their dotted name relative to the directory that contains the package.
PACKAGE_ROOT = Path(__file__).parent.parent
IMPORT_ROOT = PACKAGE_ROOT.parent

ALL_FILES = get_all_python_files(PACKAGE_ROOT)


@pytest.mark.parametrize("file_path", ALL_FILES)
def test_import_file(file_path):
    """
    Attempts to import the given file as a module.
    """
    module_name = path_to_module(file_path, IMPORT_ROOT)

    if not module_name:
        pytest.skip(f"Could not determine module name for {file_path}")

    try:
        importlib.import_module(module_name)
    except ImportError as e:
        pytest.fail(f"Failed to import {module_name}: {e}")
