"""
Minimal test harness shared by the test modules.

Test classes derive from :class:`TestCase`. They run under pytest (through
``setup_method``/``teardown_method``) or standalone with :class:`TestRunner`.
"""

import os
import shutil
import tempfile
import traceback

from rich.console import Console


class RaisesContext:
    def __init__(self, exc_type):
        self.exc_type = exc_type
        self.exception = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, tb):
        if exc_type is None:
            raise AssertionError(f"Expected exception {self.exc_type.__name__}, but no exception was raised")

        if not issubclass(exc_type, self.exc_type):
            raise AssertionError(
                f"Expected exception {self.exc_type.__name__}, but got {exc_type.__name__}"
            )

        self.exception = exc_value
        return True


class TestCase:
    """Base class with a scratch directory for image files."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="fsa-test-")
        self.image_path = os.path.join(self.tmpdir, "test_fs.img")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def setup_method(self, method=None):
        self.setUp()

    def teardown_method(self, method=None):
        self.tearDown()

    def write_image(self, chunks, size=None):
        """Write ``{offset: bytes}`` into a fresh image file, zero-filled up to ``size``"""
        with open(self.image_path, "wb") as f:
            if size is not None:
                f.truncate(size)
            for offset, data in chunks.items():
                f.seek(offset)
                f.write(data)
        return self.image_path

    def assertEqual(self, a, b, msg=""):
        if a != b:
            raise AssertionError(f"{msg} | {a!r} != {b!r}")

    def assertTrue(self, x, msg=""):
        if not x:
            raise AssertionError(f"{msg} | Expression is not True")

    def assertIn(self, member, container, msg=""):
        if member not in container:
            raise AssertionError(f"{msg} | {member!r} not found in {container!r}")

    def assertNotIn(self, member, container, msg=""):
        if member in container:
            raise AssertionError(f"{msg} | {member!r} unexpectedly found in {container!r}")

    def assertRaises(self, exc_type, func=None, *args, **kwargs):
        if func is None:
            return RaisesContext(exc_type)
        with RaisesContext(exc_type) as ctx:
            func(*args, **kwargs)
        return ctx


class TestRunner:
    """Finds and runs every ``test_`` method of the given classes."""

    __test__ = False

    def __init__(self):
        self.console = Console()
        self.tests_run = 0
        self.failures = []

    def run(self, test_case_class):
        self.console.print(f"[bold yellow]Running tests for {test_case_class.__name__}[/bold yellow]")
        test_instance = test_case_class()

        test_methods = [m for m in dir(test_instance) if m.startswith("test_")]

        for method_name in test_methods:
            self.tests_run += 1
            try:
                test_instance.setUp()
                getattr(test_instance, method_name)()
                self.console.print(f"  [green]✓[/green] {method_name}")
            except Exception:
                self.failures.append((method_name, traceback.format_exc()))
                self.console.print(f"  [bold red]✗ FAILED[/bold red]: {method_name}")
            finally:
                test_instance.tearDown()

        self.console.print("-" * 40)

    def summary(self) -> bool:
        self.console.print("\n[bold]Test Summary[/bold]")
        if self.failures:
            self.console.print(f"[bold red]FAILURES ({len(self.failures)}):[/bold red]")
            for name, tb in self.failures:
                self.console.print(f"\n--- Failure in {name} ---")
                self.console.print(tb, style="red", markup=False)

        passed = self.tests_run - len(self.failures)
        color = "green" if passed == self.tests_run else "yellow"
        self.console.print(f"[{color}]Ran {self.tests_run} tests. {passed} passed, {len(self.failures)} failed.[/{color}]")
        return not self.failures
