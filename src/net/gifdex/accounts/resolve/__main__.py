from typing import List
import argparse
import aiohttp
import asyncio
import json
import logging

from net.gifdex.accounts.errors import ResolutionFailed
from net.gifdex.accounts.resolve.actor import create_actor_resolver

logger = logging.getLogger(__name__)


async def realMain() -> None:
    parser = argparse.ArgumentParser(prog="resolve", description="Resolve handles and DIDs")
    parser.add_argument("subject", nargs="+", help="The handle(s) or DID(s) to resolve.")
    parser.add_argument(
        "--plc-hostname",
        default="plc.directory",
        help="The PLC hostname to use for resolving did-method-plc DIDs.",
    )
    parser.add_argument(
        "--dns-method",
        choices=["doh", "system"],
        default="doh",
        help="Resolve _atproto TXT records over DNS-over-HTTPS or the system resolver.",
    )
    parser.add_argument(
        "--doh-url",
        default="https://cloudflare-dns.com/dns-query",
        help="The DNS-over-HTTPS JSON endpoint used when --dns-method=doh.",
    )
    parser.add_argument(
        "--timeout", type=float, default=10.0, help="Per-method timeout in seconds."
    )

    args = vars(parser.parse_args())

    subjects: List[str] = args.get("subject", [])

    async with aiohttp.ClientSession() as session:
        resolver = create_actor_resolver(
            session,
            plc_hostname=args["plc_hostname"],
            handle_dns_method=args["dns_method"],
            doh_url=args["doh_url"],
            timeout=args["timeout"],
        )
        for subject in subjects:
            try:
                resolved = await resolver.resolve(subject)
                print(json.dumps(resolved.model_dump()))
            except ResolutionFailed as e:
                logger.error("Unable to resolve %s: %s", subject, e.reasons)
            except Exception:
                logging.exception("Exception resolving subject %s", subject)


def main() -> None:
    logging.basicConfig()
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
