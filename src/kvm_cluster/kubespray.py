"""
kubespray checkout and playbook execution.
"""

import asyncio
import os
import subprocess
from typing import List, Optional

from .exceptions import KubesprayError
from .logging import logger

KUBESPRAY_REPOSITORY = "https://github.com/kubernetes-sigs/kubespray"
DEFAULT_LOG_FILE = "/var/log/kvm-cluster-ansible.log"
# Rough number of tasks in a full cluster.yml run, used for progress
EXPECTED_PLAYBOOK_TASKS = 1555
TASK_PREFIX = "TASK ["


def _run(args: List[str], log_file: str, cwd: Optional[str] = None) -> int:
    """Run ``args`` with output appended to ``log_file``, logging each ansible task started."""
    tasks = 0
    try:
        with open(log_file, "a") as log:
            proc = subprocess.Popen(
                args,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                universal_newlines=True,
            )
            with proc.stdout:
                for line in proc.stdout:
                    log.write(line)
                    if line.startswith(TASK_PREFIX):
                        tasks += 1
                        name = line[len(TASK_PREFIX):].split("]", 1)[0]
                        percent = min(100, tasks * 100 // EXPECTED_PLAYBOOK_TASKS)
                        logger.info(f"kubespray task {tasks}: {name}", task=tasks, percent=percent)
            code = proc.wait()
    except OSError as e:
        raise KubesprayError(f"cannot run {args[0]}: {e}", args[0])
    return code


async def clone_repository(
    location: str, repository: str = KUBESPRAY_REPOSITORY, log_file: str = DEFAULT_LOG_FILE
) -> str:
    """Clone kubespray into ``location``; an existing checkout is reused."""
    location = os.path.expanduser(location)
    if os.path.isdir(os.path.join(location, ".git")):
        logger.info(f"kubespray already present in {location}", path=location)
        return location

    logger.info(f"Cloning {repository} into {location}", path=location)
    code = await asyncio.get_running_loop().run_in_executor(
        None, _run, ["git", "clone", repository, location], log_file
    )
    if code != 0:
        raise KubesprayError(f"git clone of {repository} exited with {code}, see {log_file}", "clone")
    return location


async def run_playbook(
    inventory: str, location: str, playbook: str = "cluster.yml", log_file: str = DEFAULT_LOG_FILE
) -> None:
    """Run ``ansible-playbook -b -i <inventory> <playbook>`` inside the checkout."""
    location = os.path.expanduser(location)
    args = ["ansible-playbook", "-b", "-i", os.path.abspath(os.path.expanduser(inventory)), playbook]
    logger.info("Running kubespray", inventory=inventory, path=location, log_file=log_file)
    code = await asyncio.get_running_loop().run_in_executor(None, _run, args, log_file, location)
    if code != 0:
        raise KubesprayError(f"ansible-playbook exited with {code}, see {log_file}", "playbook")
    logger.info("kubespray finished", inventory=inventory)
