#!/usr/bin/env python3
"""
Dev helper: post a test form submission to the local Form Relay backend.

Builds a "Partner With Us" or "Apply Now" submission, optionally attaches
real files (or a generated sample PDF), and POST-s it as multipart/form-data
to /api/partner or /api/apply.

Usage
-----
# Partner enquiry with no attachments, targeting localhost:4040
python scripts/send_test_submission.py partner

# Startup application with a pitch deck
python scripts/send_test_submission.py apply --file pitch_deck=deck.pdf

# Individual application, several files
python scripts/send_test_submission.py apply --mode individual \\
    --file ip_files=patent1.pdf --file ip_files=patent2.pdf

# Different backend
python scripts/send_test_submission.py partner --url http://staging.example.com

Environment / .env
------------------
PORT    Used for the default --url (default: 4040).
"""

import argparse
import json
import mimetypes
import os
import sys
import textwrap
from pathlib import Path

import httpx
from dotenv import load_dotenv

_SAMPLE_PDF = (
    b"%PDF-1.4\n1 0 obj<</Type/Catalog/Pages 2 0 R>>endobj\n"
    b"2 0 obj<</Type/Pages/Kids[]/Count 0>>endobj\ntrailer<</Root 1 0 R>>\n%%EOF\n"
)


# ---------------------------------------------------------------------------
# Submission builders
# ---------------------------------------------------------------------------

def _partner_fields(args: argparse.Namespace) -> dict:
    return {
        "name": args.name,
        "email": args.email,
        "organisation": args.organisation,
        "enquiry": "Test enquiry sent by send_test_submission.py",
    }


def _apply_fields(args: argparse.Namespace) -> dict:
    fields = {
        "mode": args.mode,
        "name": args.name,
        "email": args.email,
        "organisation": args.organisation,
    }
    if args.mode == "startup":
        fields["startupName"] = args.organisation
    return fields


_FIELD_BUILDERS = {
    "partner": _partner_fields,
    "apply": _apply_fields,
}

_DEFAULT_FILE_FIELD = {
    "partner": "attachments",
    "apply": "pitch_deck",
}


def _load_files(specs: list[str], form: str) -> list[tuple]:
    """
    Turn ``[field=]path`` specs into httpx multipart file tuples.

    Without --file a generated sample PDF is attached under the form's
    default file field.
    """
    if not specs:
        return [(_DEFAULT_FILE_FIELD[form], ("sample.pdf", _SAMPLE_PDF, "application/pdf"))]

    files = []
    for spec in specs:
        field, sep, path_str = spec.partition("=")
        if not sep:
            field, path_str = _DEFAULT_FILE_FIELD[form], spec
        path = Path(path_str)
        if not path.exists():
            raise FileNotFoundError(path)
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        files.append((field, (path.name, path.read_bytes(), content_type)))
    return files


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> int:
    # scripts/ lives one level below the project root
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")

    default_url = f"http://localhost:{os.getenv('PORT', '4040')}"

    parser = argparse.ArgumentParser(
        prog="send_test_submission.py",
        description="Send a test form submission to the Form Relay backend.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python scripts/send_test_submission.py partner
              python scripts/send_test_submission.py apply --file pitch_deck=deck.pdf
              python scripts/send_test_submission.py apply --mode individual
        """),
    )
    parser.add_argument("form", choices=list(_FIELD_BUILDERS), help="Which form to submit")
    parser.add_argument("--url", default=default_url, help=f"Backend base URL (default: {default_url})")
    parser.add_argument("--name", default="Test Person")
    parser.add_argument("--email", default="test@example.com")
    parser.add_argument("--organisation", default="Test Org")
    parser.add_argument(
        "--mode",
        default="startup",
        help='Apply form mode: "startup" or anything else for individual (default: startup)',
    )
    parser.add_argument(
        "--file",
        action="append",
        default=[],
        metavar="[FIELD=]PATH",
        help="Attach a file; repeatable. A sample PDF is attached if omitted.",
    )
    parser.add_argument(
        "--no-files",
        action="store_true",
        help="Send fields only.",
    )

    args = parser.parse_args()

    fields = _FIELD_BUILDERS[args.form](args)
    try:
        files = [] if args.no_files else _load_files(args.file, args.form)
    except FileNotFoundError as e:
        print(f"ERROR: File not found: {e}", file=sys.stderr)
        return 1

    endpoint = f"{args.url.rstrip('/')}/api/{args.form}"
    print(f"Endpoint   : {endpoint}")
    print(f"Fields     : {', '.join(f'{k}={v}' for k, v in fields.items())}")
    print(f"Attachments: {', '.join(f'{f[0]}:{f[1][0]}' for f in files) or '(none)'}")

    try:
        response = httpx.post(endpoint, data=fields, files=files or None, timeout=60)
    except httpx.HTTPError as e:
        print(f"\n[FAIL] Could not reach {endpoint}: {e}", file=sys.stderr)
        return 1

    symbol = "OK" if response.status_code == 200 else "FAIL"
    print(f"\n[{symbol}] HTTP {response.status_code}")
    try:
        print(json.dumps(response.json(), indent=2))
    except ValueError:
        print(response.text)
    return 0 if response.status_code == 200 else 1


if __name__ == "__main__":
    sys.exit(main())
