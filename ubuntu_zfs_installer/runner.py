#!/usr/bin/env python3
# Command Runner Module
# Single seam through which every external tool is invoked

import logging
import os
import shlex
import shutil
import stat
import subprocess
import time

logger = logging.getLogger(__name__)


class Result:
    def __init__(self, rc, out="", err=""):
        self.rc = rc
        self.out = out
        self.err = err

    @property
    def ok(self):
        return self.rc == 0


class CommandRunner:
    """Runs external commands, logs them, and answers simple host queries.

    Components receive a runner instead of calling subprocess directly, so
    the orchestration can be exercised in tests with a recording fake.
    """

    def __init__(self, dry_run=False):
        self.dry_run = dry_run

    def run(self, cmd, check=True, input=None, env=None, timeout=None, readonly=False):
        """Run a command and return a Result.

        Raises subprocess.CalledProcessError when check is set and the
        command exits non-zero. Data passed on stdin is never logged.
        In dry-run mode only readonly queries are executed.
        """
        cmd = [str(part) for part in cmd]
        printable = shlex.join(cmd)
        if self.dry_run and not readonly:
            logger.info(f"DRY-RUN: {printable}")
            return Result(0)

        logger.debug(f"exec: {printable}")
        started = time.monotonic()
        result = self._execute(cmd, input=input, env=env, timeout=timeout)
        logger.debug(f"exit {result.rc} after {time.monotonic() - started:.1f}s: {printable}")
        if result.out:
            logger.debug(result.out.rstrip())
        if result.err:
            logger.debug(result.err.rstrip())

        if check and result.rc != 0:
            raise subprocess.CalledProcessError(result.rc, cmd, result.out, result.err)
        return result

    def _execute(self, cmd, input=None, env=None, timeout=None):
        run_env = None
        if env:
            run_env = os.environ.copy()
            run_env.update(env)
        try:
            proc = subprocess.run(
                cmd,
                input=input,
                capture_output=True,
                text=True,
                env=run_env,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            return Result(127, "", str(e))
        except subprocess.TimeoutExpired:
            return Result(124, "", f"timed out after {timeout}s")
        return Result(proc.returncode, proc.stdout, proc.stderr)

    def chroot(self, root, cmd, **kwargs):
        """Run a command inside the staging root"""
        return self.run(["chroot", root] + list(cmd), **kwargs)

    def which(self, name):
        return shutil.which(name)

    def is_block_device(self, path):
        try:
            return stat.S_ISBLK(os.stat(path).st_mode)
        except OSError:
            return False

    def is_mountpoint(self, path):
        return self.run(["mountpoint", "-q", path], check=False, readonly=True).ok

    def sleep(self, seconds):
        time.sleep(seconds)
