"""
Exam Gate - Main Entry Point

Command-line front end for face enrollment, verification, eligibility and a
live proctored exam session.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from exam_gate.app.ai.descriptor import NotFound
from exam_gate.app.ai.face_extractor import get_descriptor_extractor
from exam_gate.app.ai.face_matcher import DescriptorMatcher
from exam_gate.app.auth import Authenticator
from exam_gate.app.camera.capture import StillImageSource
from exam_gate.app.config import get_config_manager
from exam_gate.app.eligibility import EligibilityService
from exam_gate.app.errors import ApiError, ModelLoadError
from exam_gate.app.exam_engine import ExamEngine, ExamStatus
from exam_gate.app.storage.exam_api_client import ExamApiClient
from exam_gate.app.utils.logger import setup_logging, verify_chain
from exam_gate.app.verification.controller import VerificationController

logger = logging.getLogger(__name__)


def _frame_source(image: Optional[str]):
    if image is None:
        return None
    return lambda: StillImageSource(Path(image))


def cmd_extract(args) -> int:
    try:
        result = get_descriptor_extractor().extract(Path(args.image))
    except ModelLoadError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    if isinstance(result, NotFound):
        print(f"No face: {result.reason}")
        return 1

    print(json.dumps(result.to_list()))
    return 0


def cmd_compare(args) -> int:
    extractor = get_descriptor_extractor()
    try:
        a = extractor.extract(Path(args.image_a))
        b = extractor.extract(Path(args.image_b))
    except ModelLoadError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    for path, result in ((args.image_a, a), (args.image_b, b)):
        if isinstance(result, NotFound):
            print(f"No face in {path}: {result.reason}")
            return 1

    match = DescriptorMatcher(args.threshold).compare(a, b)
    print(f"distance={match.distance:.4f} threshold={match.threshold} match={match.is_match}")
    return 0 if match.is_match else 1


def cmd_audit_verify(args) -> int:
    audit_file = Path(args.file) if args.file else get_config_manager().config.audit_file
    if not audit_file.exists():
        print(f"No audit trail at {audit_file}")
        return 1

    events = []
    for number, line in enumerate(audit_file.read_text().splitlines(), start=1):
        if not line.strip():
            continue
        try:
            events.append(json.loads(line))
        except ValueError:
            print(f"Line {number} is not an audit event")
            return 1

    # A rotated file starts mid-chain
    if not verify_chain(events, anchor=None):
        print(f"Audit trail {audit_file} has been altered")
        return 1

    print(f"Audit trail intact: {len(events)} events")
    return 0


async def cmd_login(args, client: ExamApiClient) -> int:
    result = await Authenticator(client).login(args.id, args.password)
    if not result.success:
        print(result.error)
        return 1
    print(result.token)
    return 0


async def cmd_enroll(args, client: ExamApiClient) -> int:
    result = await Authenticator(client).enroll(
        username=args.username,
        email=args.email,
        password=args.password,
        photo=Path(args.photo),
        role=args.role,
    )
    if not result.success:
        print(result.error)
        return 1
    print(f"Registered {result.username} ({result.user_id})")
    return 0


async def cmd_eligibility(args, client: ExamApiClient) -> int:
    result = await EligibilityService(client).check()
    if result.error:
        print(f"WARNING: {result.error}")
    for course in result.courses:
        print(f"  {course.course_name or course.course_id}: "
              f"{course.completion_rate:.0f}% ({course.status.value})")
    print(f"Exam eligible: {result.exam_eligible}")
    return 0 if result.exam_eligible else 1


async def cmd_verify(args, client: ExamApiClient) -> int:
    controller = VerificationController(client)
    attempt = await controller.run_attempt(_frame_source(args.image))
    if attempt.verified:
        print("Verified")
        return 0
    print(f"Failed ({attempt.reason.value}): {attempt.message}")
    return 2 if attempt.is_fatal else 1


async def _fetch_interval(client: ExamApiClient) -> Optional[int]:
    try:
        settings = await client.get_exam_settings()
    except ApiError as e:
        logger.warning(f"Exam settings unavailable, using default interval: {e}")
        return None
    return settings.get("faceVerificationIntervalMinutes")


async def _ask(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, input, prompt)


async def cmd_exam(args, client: ExamApiClient) -> int:
    eligibility = await EligibilityService(client).check()
    if not eligibility.exam_eligible:
        print(eligibility.error or "Complete all purchased courses before taking the exam.")
        for course in eligibility.incomplete_courses:
            print(f"  {course.course_name or course.course_id}: {course.completion_rate:.0f}%")
        return 1

    interval = args.interval or await _fetch_interval(client)

    controller = VerificationController(client)
    engine = ExamEngine(
        controller,
        interval_minutes=interval,
        on_state_change=lambda s: print(f"[exam] {s.status.value}"),
        on_verification_prompt=lambda s: print("[exam] Identity check: look at the camera"),
    )
    engine.request_entry(eligibility)
    frame_source = _frame_source(args.image)

    while engine.status == ExamStatus.AWAITING_VERIFICATION:
        attempt = await engine.verify_entry(frame_source)
        if attempt.verified:
            break
        print(attempt.message)
        if attempt.is_fatal:
            return 2
        await _ask("Press Enter to retry...")

    print(f"Exam started. Re-verification every {engine.interval_minutes} min. "
          f"Type 'submit' to finish, 'retry' to re-verify while blocked.")

    try:
        while engine.status in (ExamStatus.ACTIVE, ExamStatus.BLOCKED):
            command = (await _ask("> ")).strip().lower()
            if command == "submit":
                engine.submit_exam()
            elif command == "retry" and engine.status == ExamStatus.BLOCKED:
                attempt = await engine.reverify(frame_source)
                print(attempt.message)
            elif command.startswith("answer "):
                _, question_id, answer = (command.split(maxsplit=2) + [""])[:3]
                if not engine.save_answer(question_id, answer):
                    print("Answers are disabled until you re-verify.")
    except (KeyboardInterrupt, EOFError):
        engine.submit_exam()

    print(f"Submitted {len(engine.session.answers)} answer(s).")
    return 0


ASYNC_COMMANDS = {
    "login": cmd_login,
    "enroll": cmd_enroll,
    "eligibility": cmd_eligibility,
    "verify": cmd_verify,
    "exam": cmd_exam,
}


async def _run_async(args) -> int:
    async with ExamApiClient(token=args.token) as client:
        return await ASYNC_COMMANDS[args.command](args, client)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="exam-gate",
        description="Exam-room face verification and eligibility"
    )
    parser.add_argument("--token", help="Bearer token (default: EXAM_API_TOKEN)")
    parser.add_argument("--policy", type=Path, help="Signed policy file")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("extract", help="Print the face descriptor of an image")
    p.add_argument("image")

    p = sub.add_parser("compare", help="Compare the faces in two images")
    p.add_argument("image_a")
    p.add_argument("image_b")
    p.add_argument("--threshold", type=float, default=None)

    p = sub.add_parser("login", help="Log in and print the bearer token")
    p.add_argument("--id", required=True, help="Username or email")
    p.add_argument("--password", required=True)

    p = sub.add_parser("enroll", help="Register an account with a face photo")
    p.add_argument("--username", required=True)
    p.add_argument("--email", required=True)
    p.add_argument("--password", required=True)
    p.add_argument("--photo", required=True)
    p.add_argument("--role", default="student", choices=["student", "admin"])

    p = sub.add_parser("audit-verify", help="Check the audit trail hash chain")
    p.add_argument("--file", help="Audit file (default: configured audit log)")

    sub.add_parser("eligibility", help="Check exam eligibility")

    p = sub.add_parser("verify", help="Run one face verification attempt")
    p.add_argument("--image", help="Verify a photo instead of the camera")

    p = sub.add_parser("exam", help="Run a proctored exam session")
    p.add_argument("--image", help="Use a photo instead of the camera")
    p.add_argument("--interval", type=int, help="Override re-verification minutes")

    return parser


def main(argv=None) -> int:
    """Application entry point"""
    args = build_parser().parse_args(argv)

    config_manager = get_config_manager()
    config = config_manager.config

    setup_logging(config.log_file, config.debug_mode)

    logger.info("=" * 60)
    logger.info(f"Exam Gate starting: {args.command}")
    logger.info(f"Timestamp: {datetime.now().isoformat()}")
    logger.info("=" * 60)

    if config_manager.load_policy(args.policy):
        logger.info("Policy configuration loaded")
        if config.policy_verified:
            logger.info("Policy signature verified")
    else:
        logger.info("Using default configuration")

    if args.command == "extract":
        return cmd_extract(args)
    if args.command == "compare":
        return cmd_compare(args)
    if args.command == "audit-verify":
        return cmd_audit_verify(args)

    exit_code = asyncio.run(_run_async(args))
    logger.info(f"Exam Gate exiting with code {exit_code}")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
