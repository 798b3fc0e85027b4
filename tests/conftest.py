import os
import sys


def pytest_configure(config):
    # `common`, `state` and `sync` live under src/ as top-level packages
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)
    config.addinivalue_line("markers", "asyncio: coroutine test run by pytest-asyncio")
