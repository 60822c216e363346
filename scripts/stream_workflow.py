#!/usr/bin/env python3
"""
Stream One Recruiter Workflow

Run a single workflow against the backend and print progress as it
streams in. Useful for checking a backend deployment before pointing the
UI at it.

Usage:
    # Job description from a file, one resume
    python scripts/stream_workflow.py --jd job.txt --resume 64f0c0ffee

    # Several resumes, explicit backend
    python scripts/stream_workflow.py --jd job.txt --resume r1 --resume r2 \\
        --api-url http://localhost:8010

    # Dump the final result as JSON
    python scripts/stream_workflow.py --jd job.txt --resume r1 --json
"""

import sys
import json
import asyncio
import argparse
from pathlib import Path

from dotenv import load_dotenv

from recruiter_stream import (
    RunMeta,
    RunStatus,
    StreamConfig,
    UpdateKind,
    WorkflowClient,
    WorkflowRequest,
    WorkflowRunController,
    WorkflowUpdate,
)
from recruiter_stream.models import JobMetadata, ResumeReference


def main():
    parser = argparse.ArgumentParser(description="Stream a recruiter workflow run")
    parser.add_argument("--jd", required=True, help="Path to a job description text file")
    parser.add_argument("--resume", action="append", required=True, help="Resume id (repeatable)")
    parser.add_argument("--candidate", default="", help="Candidate id that owns the resumes")
    parser.add_argument("--title", default="", help="Job title")
    parser.add_argument("--api-url", default=None, help="Backend base URL (default: from environment)")
    parser.add_argument("--idle-timeout", type=float, default=None, help="Seconds without events before giving up")
    parser.add_argument("--json", action="store_true", help="Print the final result as JSON")
    args = parser.parse_args()

    jd_path = Path(args.jd)
    if not jd_path.exists():
        print(f"❌ Job description not found: {jd_path}")
        sys.exit(1)

    load_dotenv()
    record = asyncio.run(run_workflow(args, jd_path.read_text(encoding="utf-8")))
    sys.exit(0 if record.status == RunStatus.COMPLETE else 1)


async def run_workflow(args, job_description: str):
    config = StreamConfig.from_env()
    if args.api_url:
        config.api_base_url = args.api_url.rstrip("/")
    if args.idle_timeout:
        config.idle_timeout_seconds = args.idle_timeout

    request = WorkflowRequest(
        job_description=job_description,
        resumes=[ResumeReference(resume_id=r, candidate_id=args.candidate or None) for r in args.resume],
        job_metadata=JobMetadata(title=args.title),
    )
    if args.candidate:
        candidate = {"kind": "candidate", "candidate_id": args.candidate}
    else:
        candidate = {"kind": "standalone_resume", "resume_id": args.resume[0]}
    meta = RunMeta(
        candidate_name=args.candidate or args.resume[0],
        job_title=args.title or "Untitled role",
        resume_ids=tuple(args.resume),
        candidate=candidate,
    )

    client = WorkflowClient(config)
    controller = WorkflowRunController(client, config)

    def on_update(update: WorkflowUpdate):
        if update.kind == UpdateKind.STATUS:
            print(f"⏳ [{update.step}] {update.state.status_message or ''}")
        elif update.kind in (UpdateKind.RESULT, UpdateKind.PARTIAL):
            label = "✅" if update.kind == UpdateKind.RESULT else "…"
            print(f"{label} {update.step}")
        elif update.kind == UpdateKind.STEP_ERROR:
            print(f"⚠️  {update.step}: {update.event.message if update.event else ''}")

    controller.subscribe(on_update)

    print(f"🔍 Backend: {config.api_base_url}")
    print("=" * 50)
    try:
        record = await controller.run(request, meta)
    finally:
        await client.aclose()

    print("=" * 50)
    if record.status == RunStatus.COMPLETE:
        result = record.result
        print(f"📊 Core skills: {len(result.core_skills)}  Shortlist: {len(result.ranked_shortlist)}")
    else:
        print(f"❌ Run {record.status.value}: {record.error}")

    if args.json:
        print(json.dumps(record.to_dict(), indent=2))

    return record


if __name__ == "__main__":
    main()
