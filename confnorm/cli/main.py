from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import List

from confnorm.core.alerts import detect_alerts
from confnorm.core.config import PipelineConfig
from confnorm.core.detection import sniff_file
from confnorm.core.errors import ConfnormError
from confnorm.core.normalization import CertificateDisplayPolicy, FieldTransformPolicy
from confnorm.core.runtime import ConversionService, LocalUploadStore
from confnorm.utils.json_safe import dumps


def _read_input(path: str) -> bytes | None:
    if not os.path.exists(path):
        print(f"error: file not found: {path}", file=sys.stderr)
        return None
    if not os.path.isfile(path):
        print(f"error: not a regular file: {path}", file=sys.stderr)
        return None
    with open(path, "rb") as f:
        return f.read()


def cmd_convert(args: argparse.Namespace) -> int:
    """Convert a local file and print YAML, JSON or the full result.

    Security notes:
    - Sensitive fields are masked by default; `--field-policy none` disables it.

    """

    path = os.path.abspath(args.path)
    data = _read_input(path)
    if data is None:
        return 2

    cfg = PipelineConfig.from_env()
    service = ConversionService(cfg)
    try:
        result = service.convert_bytes(
            data,
            os.path.basename(path),
            field_policy=FieldTransformPolicy(args.field_policy),
            cert_policy=CertificateDisplayPolicy(args.cert_policy),
            include_mapping=bool(args.mapping),
        )
    except ConfnormError as e:
        print(dumps(e.to_dict()), file=sys.stderr)
        return 3

    if args.format == "yaml":
        text = result.yaml
    elif args.format == "json":
        text = result.json
    else:
        text = dumps(result.to_dict(), sort_keys=True)

    if args.out:
        with open(args.out, "w", encoding="utf-8") as f:
            f.write(text)
    else:
        sys.stdout.write(text if text.endswith("\n") else text + "\n")

    for alert in result.alerts:
        print(f"alert: [{alert.severity.value}] {alert.kind.value}: {alert.message}", file=sys.stderr)
    return 0


def cmd_sniff(args: argparse.Namespace) -> int:
    """Print the sniffed file type of a local file."""

    path = os.path.abspath(args.path)
    if not os.path.isfile(path):
        print(f"error: file not found: {path}", file=sys.stderr)
        return 2
    res = sniff_file(path)
    output = {
        "file_type": res.file_type.value,
        "extension": res.extension,
        "confidence": res.confidence,
        "profile": res.profile,
    }
    print(json.dumps(output, indent=2, sort_keys=True))
    return 0


def cmd_alerts(args: argparse.Namespace) -> int:
    """Print malformation alerts for a local file (advisory, exit 0)."""

    path = os.path.abspath(args.path)
    data = _read_input(path)
    if data is None:
        return 2
    cfg = PipelineConfig.from_env()
    alerts = detect_alerts(
        os.path.basename(path), None, data, tag_balance_tolerance=cfg.tag_balance_tolerance
    )
    print(json.dumps([a.to_dict() for a in alerts], indent=2, sort_keys=True))
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    """Delete stored uploads older than the retention window."""

    cfg = PipelineConfig.from_env()
    store = LocalUploadStore(cfg.upload_dir, cfg.alternate_upload_dir)
    max_age = args.max_age if args.max_age is not None else cfg.retention_seconds
    removed = store.sweep(float(max_age))
    print(json.dumps({"removed": removed, "max_age_seconds": max_age}, indent=2, sort_keys=True))
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the confnorm API server.

    Security notes:
    - Bind to 127.0.0.1 by default (safer than 0.0.0.0).

    """

    try:
        import uvicorn
    except Exception as e:
        print(f"error: uvicorn is required to serve the API: {e}", file=sys.stderr)
        return 2

    from confnorm.api.server import create_app

    app = create_app(PipelineConfig.from_env())
    uvicorn.run(app, host=args.host, port=int(args.port), log_level=args.log_level)
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI parser."""
    p = argparse.ArgumentParser(prog="confnorm", description="Configuration normalization CLI")
    sub = p.add_subparsers(dest="cmd", required=True)

    cp = sub.add_parser("convert", help="Convert a configuration file to YAML/JSON")
    cp.add_argument("path", help="Path to file")
    cp.add_argument(
        "--field-policy",
        choices=[x.value for x in FieldTransformPolicy],
        default=FieldTransformPolicy.MASK.value,
        help="Display policy for sensitive fields",
    )
    cp.add_argument(
        "--cert-policy",
        choices=[x.value for x in CertificateDisplayPolicy],
        default=CertificateDisplayPolicy.OBFUSCATE.value,
        help="Display policy for certificate material",
    )
    cp.add_argument("--format", choices=["yaml", "json", "result"], default="yaml", help="Output format")
    cp.add_argument("--mapping", action="store_true", help="Include the Passpoint profile mapping")
    cp.add_argument("--out", default=None, help="Write output to this file instead of stdout")
    cp.set_defaults(func=cmd_convert)

    sp = sub.add_parser("sniff", help="Detect the file type of a local file")
    sp.add_argument("path", help="Path to file")
    sp.set_defaults(func=cmd_sniff)

    ap = sub.add_parser("alerts", help="Report malformation alerts for a local file")
    ap.add_argument("path", help="Path to file")
    ap.set_defaults(func=cmd_alerts)

    wp = sub.add_parser("sweep", help="Delete stored uploads past retention")
    wp.add_argument("--max-age", type=float, default=None, help="Max age in seconds (default: retention)")
    wp.set_defaults(func=cmd_sweep)

    vp = sub.add_parser("serve", help="Run the HTTP API")
    vp.add_argument("--host", default="127.0.0.1", help="Bind host")
    vp.add_argument("--port", type=int, default=8000, help="Bind port")
    vp.add_argument("--log-level", default="info", help="uvicorn log level")
    vp.set_defaults(func=cmd_serve)

    return p


def main(argv: List[str] | None = None) -> int:
    """CLI entry."""
    logging.basicConfig(level=os.environ.get("CONFNORM_LOG_LEVEL", "WARNING").upper())
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
