"""Test utilities."""

import pathlib
import sys
import textwrap
import warnings


# Suppress unawaited coroutine warnings from AsyncMock in tests.
warnings.filterwarnings("ignore", message="coroutine.*was never awaited")


def write_fake_ffmpeg(directory: pathlib.Path, body: str, name: str = "ffmpeg") -> str:
    """Write an executable Python script that stands in for ffmpeg.

    The script ignores its arguments and runs `body` with `sys`, `time` and
    `signal` already imported. Returns the script path.

    Usage:
        path = write_fake_ffmpeg(tmp_path, '''
            sys.stderr.write("frame=    1 fps=0.0\\r")
            sys.stderr.flush()
            time.sleep(30)
        ''')
    """
    path = directory / name
    path.write_text(f"#!{sys.executable}\nimport signal, sys, time\n{textwrap.dedent(body)}")
    path.chmod(0o755)
    return str(path)


def run_tests(test_file: str) -> None:
    """Run pytest on a test file with standard flags.

    Usage:
        if __name__ == "__main__":
            from testing import run_tests
            run_tests(__file__)
    """
    import pytest

    sys.exit(
        pytest.main(
            [
                test_file,
                "-v",
                "-s",
                "-W",
                "ignore::pytest.PytestAssertRewriteWarning",
                *sys.argv[1:],
            ]
        )
    )
