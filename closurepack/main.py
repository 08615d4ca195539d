"""
Command line tool for inspecting serialized closures.

    python -m closurepack.main inspect payload.bin --key secret
    python -m closurepack.main verify payload.bin --key secret
    python -m closurepack.main inspect payload.bin --unsafe
"""

import logging
import pprint
import sys
from typing import List, Optional

from closurepack.config import SerializerConfig
from closurepack.core.codec import get_runtime_info, hex_to_bytes, load_descriptor
from closurepack.core.serializer import ClosureSerializer, split_signature
from closurepack.errors import ClosureError

log = logging.getLogger(__name__)


def _read_payload(path: str, is_hex: bool) -> bytes:
    if path == "-":
        raw = sys.stdin.buffer.read()
    else:
        with open(path, "rb") as handle:
            raw = handle.read()
    if is_hex:
        return hex_to_bytes(raw.decode("ascii").strip())
    return raw


def main(argv: Optional[List[str]] = None) -> int:
    """Run the inspector with command-line arguments."""
    import argparse

    parser = argparse.ArgumentParser(description="closurepack payload inspector")
    parser.add_argument(
        "command", choices=["inspect", "verify"], help="Action to perform"
    )
    parser.add_argument("payload", type=str, help="Payload file, or - for stdin")
    parser.add_argument(
        "--key", type=str, default=None,
        help="HMAC signing key (defaults to CLOSUREPACK_SIGNING_KEY)",
    )
    parser.add_argument(
        "--hex", action="store_true", help="Payload is hex encoded text"
    )
    parser.add_argument(
        "--unsafe", action="store_true",
        help="Inspect a payload whose signature was not verified",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging"
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    config = SerializerConfig.from_env()
    serializer = ClosureSerializer(signing_key=args.key, config=config)

    try:
        payload = _read_payload(args.payload, args.hex)
    except (OSError, ValueError) as e:
        print(f"Cannot read payload: {e}", file=sys.stderr)
        return 2

    signature, body = split_signature(payload)
    try:
        if serializer.signing_key:
            serializer.verify_signature(signature, body)
            print("Signature: valid")
        elif signature is not None:
            print("Signature: present (no key given, not verified)")
        else:
            print("Signature: none")

        if args.command == "verify":
            return 0

        # Loading runs code from the payload
        if not serializer.signing_key:
            if not args.unsafe:
                print(
                    "❌ Refusing to load an unverified payload; pass --key, "
                    "or --unsafe if you trust its source",
                    file=sys.stderr,
                )
                return 1
            log.warning("Loading an unverified payload")

        descriptor = load_descriptor(body)
    except ClosureError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1

    print(f"Runtime: {get_runtime_info()}")
    pprint.pprint(descriptor.to_debug_dict(), sort_dicts=False)
    return 0


if __name__ == "__main__":
    sys.exit(main())
