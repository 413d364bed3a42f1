"""
Background Job Manager for Long-Running Column Simulations

A 10 x 100 cell column driven through 100000 shift-equilibrate steps takes
far longer than an MCP client will wait on a STDIO request. Such runs are
started as subprocesses (utils/ccd_cli.py) and polled by job_id.

Key Features:
- Async subprocess execution with immediate job_id return
- Crash recovery via disk-based job metadata
- Concurrency control with semaphore
- Per-job directory isolation (params.json, progress.json, ccd_results.json)
- Termination of running jobs on shutdown signals

Architecture:
    User -> MCP Tool -> JobManager.execute() -> Returns job_id immediately
                              |
                    Background subprocess runs the column simulation
                              |
    User -> get_status(job_id) -> "running, 7/10 subcolumns"
                              |
    User -> get_results(job_id) -> Full SimulationResult JSON
"""

import asyncio
import json
import logging
import os
import signal
import time
import uuid
from pathlib import Path
from typing import Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)

RESULT_FILE = "ccd_results.json"
PROGRESS_FILE = "progress.json"


class JobManager:
    """
    Singleton job manager with crash recovery and concurrency control.

    Usage:
        manager = JobManager()

        job = await manager.execute(
            cmd=[sys.executable, "utils/ccd_cli.py", "--job-dir", "jobs/{job_id}"],
            cwd="/path/to/project"
        )
        status = await manager.get_status(job["id"])
        results = await manager.get_results(job["id"])
    """

    _instance = None

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, max_concurrent_jobs: int = 2, jobs_base_dir: str = "jobs",
                 install_signal_handlers: bool = True):
        """
        Initialize job manager (only the first call has any effect).

        Args:
            max_concurrent_jobs: Maximum number of simultaneous simulations
            jobs_base_dir: Base directory for job workspaces
            install_signal_handlers: Terminate running jobs on SIGTERM/SIGINT
        """
        if hasattr(self, '_initialized'):
            return

        self.jobs: Dict[str, dict] = {}
        self.jobs_dir = Path(jobs_base_dir)
        self.jobs_dir.mkdir(parents=True, exist_ok=True)
        self.max_concurrent_jobs = max_concurrent_jobs
        self.semaphore = asyncio.Semaphore(max_concurrent_jobs)
        self._monitors: Dict[str, asyncio.Task] = {}

        self._load_existing_jobs()

        if install_signal_handlers:
            signal.signal(signal.SIGTERM, self._signal_handler)
            signal.signal(signal.SIGINT, self._signal_handler)

        self._initialized = True
        logger.info(f"JobManager initialized: max_concurrent={max_concurrent_jobs}, jobs_dir={self.jobs_dir}")

    @classmethod
    def reset(cls):
        """Forget the singleton instance (next JobManager() starts fresh)."""
        cls._instance = None

    def new_job_dir(self) -> tuple:
        """Create a fresh job directory. Returns (job_id, job_dir)."""
        job_id = str(uuid.uuid4())[:8]
        job_dir = self.jobs_dir / job_id
        job_dir.mkdir(parents=True, exist_ok=False)
        return job_id, job_dir

    def _load_existing_jobs(self):
        """Recover job metadata from disk; jobs whose process is gone are marked failed."""
        recovered = 0
        stale = 0

        for job_file in self.jobs_dir.glob("*/job.json"):
            try:
                with open(job_file) as f:
                    job = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Failed to load job from {job_file}: {e}")
                continue

            job_id = job.get("id")
            if not job_id:
                continue

            if job.get("status") in ("queued", "running"):
                pid = job.get("pid")
                if pid and self._is_process_alive(pid):
                    job["status"] = "running"
                    recovered += 1
                else:
                    job["status"] = "failed"
                    job["error"] = "Process terminated (server restart or crash)"
                    job["recovered_at"] = time.time()
                    stale += 1
                    logger.warning(f"Marked stale job {job_id} as failed")

            self.jobs[job_id] = job

        logger.info(f"Job recovery complete: {recovered} running, {stale} stale, "
                    f"{len(self.jobs)} total")

    def _is_process_alive(self, pid: int) -> bool:
        try:
            process = psutil.Process(pid)
            return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def _signal_handler(self, signum, frame):
        """Terminate all running jobs, then exit."""
        logger.warning(f"Received signal {signum}, terminating running jobs...")
        for job_id, job in self.jobs.items():
            if job["status"] == "running" and "pid" in job:
                try:
                    psutil.Process(job["pid"]).terminate()
                    logger.info(f"Terminated job {job_id} (PID: {job['pid']})")
                except psutil.Error as e:
                    logger.error(f"Failed to terminate job {job_id}: {e}")
        raise SystemExit(128 + signum)

    async def execute(self, cmd: List[str], cwd: str = ".", env: Optional[Dict[str, str]] = None,
                      job_id: Optional[str] = None) -> dict:
        """
        Start a command as a background subprocess.

        Args:
            cmd: Command as list; "{job_id}" placeholders are substituted
            cwd: Working directory for subprocess
            env: Extra environment variables
            job_id: Pre-created job ID (its directory must already exist)

        Returns:
            Job metadata dict (id, status, command, pid, ...)

        Raises:
            ValueError: If job_id is already known or its directory is missing
        """
        if job_id is None:
            job_id, job_dir = self.new_job_dir()
        else:
            job_dir = self.jobs_dir / job_id
            if job_id in self.jobs:
                raise ValueError(f"Job ID {job_id} already exists in active jobs")
            if not job_dir.exists():
                raise ValueError(f"Job directory {job_dir} must exist when providing custom job_id")

        cmd_with_id = [arg.replace("{job_id}", job_id) for arg in cmd]

        job = {
            "id": job_id,
            "command": cmd_with_id,
            "cwd": str(Path(cwd).absolute()),
            "status": "queued",
            "started_at": time.time(),
            "job_dir": str(job_dir.absolute()),
        }
        self.jobs[job_id] = job
        self._save_job_metadata(job)
        logger.info(f"Queued job {job_id}: {' '.join(cmd_with_id)}")

        # Returns immediately; the task waits for a free slot
        self._monitors[job_id] = asyncio.create_task(self._run_job(job_id, cmd_with_id, cwd, env))
        return job

    async def _run_job(self, job_id: str, cmd: List[str], cwd: str, env: Optional[Dict[str, str]]):
        """Start the subprocess once a slot is free, then monitor it."""
        job = self.jobs[job_id]

        async with self.semaphore:
            if job["status"] != "queued":
                return

            proc_env = os.environ.copy()
            if env:
                proc_env.update(env)

            try:
                proc = await asyncio.create_subprocess_exec(
                    *cmd,
                    cwd=cwd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=proc_env
                )
            except OSError as e:
                job["status"] = "failed"
                job["error"] = str(e)
                job["completed_at"] = time.time()
                self._save_job_metadata(job)
                logger.error(f"Failed to start job {job_id}: {e}")
                return

            job["pid"] = proc.pid
            job["status"] = "running"
            self._save_job_metadata(job)
            logger.info(f"Job {job_id} started with PID {proc.pid}")

            await self._monitor_job(job_id, proc)

    async def _monitor_job(self, job_id: str, proc: asyncio.subprocess.Process):
        """Wait for the subprocess, capture its output and record the outcome."""
        job = self.jobs[job_id]
        job_dir = Path(job["job_dir"])

        try:
            stdout_data, stderr_data = await proc.communicate()
            (job_dir / "stdout.log").write_bytes(stdout_data)
            (job_dir / "stderr.log").write_bytes(stderr_data)

            exit_code = proc.returncode
            if job["status"] != "terminated":
                job["status"] = "completed" if exit_code == 0 else "failed"
            job["exit_code"] = exit_code
            job["completed_at"] = time.time()

            if job["status"] == "failed":
                job["error"] = self._read_error(job_dir, stderr_data)

            logger.info(f"Job {job_id} {job['status']} with exit code {exit_code}")

        except (OSError, asyncio.CancelledError) as e:
            job["status"] = "failed"
            job["error"] = f"Monitoring error: {e}"
            job["completed_at"] = time.time()
            logger.error(f"Job {job_id} monitoring failed: {e}")
            if isinstance(e, asyncio.CancelledError):
                raise

        finally:
            self._save_job_metadata(job)

    def _read_error(self, job_dir: Path, stderr_data: bytes) -> str:
        """Prefer the structured error written by the job runner, else stderr."""
        result_path = job_dir / RESULT_FILE
        if result_path.exists():
            try:
                with open(result_path) as f:
                    data = json.load(f)
                if data.get("status") == "error":
                    return data.get("message", "Unknown error")
            except (OSError, json.JSONDecodeError):
                pass
        return stderr_data.decode(errors="replace")[-500:]

    async def wait(self, job_id: str) -> dict:
        """Block until the job's monitor has finished; returns the job metadata."""
        monitor = self._monitors.get(job_id)
        if monitor is not None:
            await monitor
        return self.jobs[job_id]

    def _save_job_metadata(self, job: dict):
        metadata_file = Path(job["job_dir"]) / "job.json"
        try:
            with open(metadata_file, "w") as f:
                json.dump(job, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save metadata for job {job['id']}: {e}")

    def _parse_progress(self, job_dir: str) -> Optional[dict]:
        """
        Read progress.json written by the job runner.

        Format:
            {"stage": "Iterating", "current": 7, "total": 10, "timestamp": ...}
        """
        progress_file = Path(job_dir) / PROGRESS_FILE
        if not progress_file.exists():
            return None
        try:
            with open(progress_file) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.debug(f"Failed to parse progress.json: {e}")
            return None

        total = data.get("total") or 0
        current = data.get("current", 0)
        return {
            "current": current,
            "total": total,
            "percent": round(100.0 * current / total, 1) if total else None,
            "message": data.get("stage", ""),
            "timestamp": data.get("timestamp")
        }

    async def get_status(self, job_id: str) -> dict:
        """
        Get job status with progress.

        Returns:
            Dict with job_id, status, elapsed_time_seconds and, when
            available, progress / error details
        """
        if job_id not in self.jobs:
            return {"error": f"Job {job_id} not found"}

        job = self.jobs[job_id]

        if job["status"] == "running" and job_id not in self._monitors:
            # Recovered job from a previous server process
            pid = job.get("pid")
            if pid and not self._is_process_alive(pid):
                job["status"] = "failed"
                job["error"] = "Process terminated unexpectedly"
                job["completed_at"] = time.time()
                self._save_job_metadata(job)

        end = job.get("completed_at") or time.time()
        status = {
            "job_id": job_id,
            "status": job["status"],
            "elapsed_time_seconds": round(end - job["started_at"], 1),
            "started_at": job["started_at"]
        }

        progress = self._parse_progress(job["job_dir"])
        if progress:
            status["progress"] = progress

        if job["status"] == "completed":
            status["completed_at"] = job.get("completed_at")
        if job["status"] == "failed":
            status["error"] = job.get("error", "Unknown error")
            status["exit_code"] = job.get("exit_code")

        return status

    async def get_results(self, job_id: str) -> dict:
        """Get the parsed ccd_results.json of a completed job."""
        if job_id not in self.jobs:
            return {"error": f"Job {job_id} not found"}

        job = self.jobs[job_id]
        if job["status"] != "completed":
            return {
                "error": f"Job {job_id} not completed (status: {job['status']})",
                "job_id": job_id,
                "status": job["status"]
            }

        job_dir = Path(job["job_dir"])
        response = {
            "job_id": job_id,
            "status": "completed",
            "total_time_seconds": round(job.get("completed_at", time.time()) - job["started_at"], 1),
            "stdout_file": str(job_dir / "stdout.log"),
            "stderr_file": str(job_dir / "stderr.log")
        }

        result_path = job_dir / RESULT_FILE
        try:
            with open(result_path) as f:
                response["results"] = json.load(f)
            response["result_file"] = str(result_path)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read {result_path}: {e}")
            response["warning"] = f"No readable {RESULT_FILE}. Check stdout/stderr logs."

        return response

    async def list_jobs(self, status_filter: Optional[str] = None, limit: int = 20) -> dict:
        """List jobs, most recent first, optionally filtered by status."""
        jobs_list = []
        for job_id, job in sorted(self.jobs.items(), key=lambda x: x[1].get("started_at", 0), reverse=True):
            if status_filter and job["status"] != status_filter:
                continue
            jobs_list.append({
                "id": job_id,
                "status": job["status"],
                "started_at": job["started_at"],
                "elapsed_time_seconds": round(time.time() - job["started_at"], 1) if job["status"] == "running" else None
            })
            if len(jobs_list) >= limit:
                break

        return {
            "jobs": jobs_list,
            "total": len(jobs_list),
            "filter": status_filter,
            "running_jobs": sum(1 for j in self.jobs.values() if j["status"] == "running"),
            "max_concurrent": self.max_concurrent_jobs
        }

    async def terminate_job(self, job_id: str) -> dict:
        """Terminate a running job (SIGTERM, then SIGKILL after one second)."""
        if job_id not in self.jobs:
            return {"error": f"Job {job_id} not found"}

        job = self.jobs[job_id]
        if job["status"] == "queued":
            job["status"] = "terminated"
            job["completed_at"] = time.time()
            self._save_job_metadata(job)
            logger.info(f"Cancelled queued job {job_id}")
            return {
                "job_id": job_id,
                "status": "terminated",
                "message": f"Job {job_id} cancelled before it started"
            }
        if job["status"] != "running":
            return {"error": f"Job {job_id} is not running (status: {job['status']})"}

        pid = job.get("pid")
        if not pid:
            return {"error": f"Job {job_id} has no PID recorded"}

        try:
            process = psutil.Process(pid)
            # Marked before signalling so the monitor does not record the exit as a failure
            job["status"] = "terminated"
            process.terminate()
            await asyncio.sleep(1)
            if process.is_running():
                process.kill()
        except psutil.NoSuchProcess:
            job["status"] = "failed"
            job["error"] = "Process no longer exists"
            self._save_job_metadata(job)
            return {"error": f"Process {pid} no longer exists"}

        job.pop("error", None)
        job["completed_at"] = time.time()
        self._save_job_metadata(job)
        logger.info(f"Terminated job {job_id} (PID: {pid})")

        return {
            "job_id": job_id,
            "status": "terminated",
            "message": f"Job {job_id} terminated successfully"
        }
