#!/usr/bin/env python3
"""Operator CLI for a locally running relayhub"""

import argparse
import asyncio
import json
import sys
import time
from typing import Any, Dict, Optional

import httpx
from eth_account import Account

from relayhub.config import settings
from relayhub.core.ledger.hashing import derive_command_id, payload_hash, to_bytes
from relayhub.core.metatx.models import MetaTransaction
from relayhub.core.metatx.signing import encode_meta_transactions, sign_batch


def default_base_url() -> str:
    return f"http://{settings.host}:{settings.port}"


def operator_headers() -> Dict[str, str]:
    if settings.operator_api_token:
        return {"Authorization": f"Bearer {settings.operator_api_token}"}
    return {}


async def request(method: str, base_url: str, path: str, **kwargs: Any) -> Any:
    async with httpx.AsyncClient() as client:
        response = await client.request(method, f"{base_url}{path}", timeout=30, **kwargs)
    if response.status_code >= 400:
        print(f"❌ {response.status_code}: {response.text}")
        sys.exit(1)
    return response.json()


async def cli_status(base_url: str):
    """Print relayer status and queue depths"""
    data = await request("GET", base_url, "/status")
    metrics = data.get("metrics", {})
    print(f"Running: {data.get('isRunning')}")
    print(f"Processed events: {data.get('processedEvents')}")
    print(f"Failed transactions: {data.get('failedTransactions')}")
    print(f"Uptime: {data.get('uptime', 0):.0f}s")
    print(f"Relayed: {metrics.get('successfulTransactions', 0)}/{metrics.get('totalTransactions', 0)}")
    print(f"Batches: {metrics.get('batchesRelayed', 0)} (unpaid {metrics.get('unpaidBatches', 0)})")
    for chain, depth in (data.get("queues") or {}).items():
        print(f"  queue {chain}: {depth}")


async def cli_failed(base_url: str):
    data = await request("GET", base_url, "/failed-transactions")
    if not data.get("transactions"):
        print("✅ No failed transactions")
        return
    for item in data["transactions"]:
        flag = f"[{item['compensation']}]" if item.get("compensated") else "[open]"
        print(f"{flag:<9} {item['commandId']} -> {item['destinationChain']}: {item['error']}")


async def cli_compensate(base_url: str, command_id: str, action: str):
    data = await request(
        "POST",
        base_url,
        f"/compensate/{command_id}",
        params={"action": action},
        headers=operator_headers(),
    )
    status = "✅" if data.get("success") else "❌"
    print(f"{status} {action} {command_id} after {data.get('attempts')} attempt(s)")
    if data.get("error"):
        print(f"   {data['error']}")


async def cli_unpaid(base_url: str, chain: Optional[str]):
    params = {"chain": chain} if chain else None
    data = await request("GET", base_url, "/unpaid-batches", params=params, headers=operator_headers())
    if not data.get("batches"):
        print("✅ No unpaid batches")
        return
    for item in data["batches"]:
        owed = item["owedCents"] if item["owedCents"] is not None else "?"
        print(f"#{item['batchId']:<5} {item['user']} owes {owed} cents: {item['reason']}")


async def cli_settle(base_url: str, chain: str, batch_id: int):
    data = await request("POST", base_url, f"/settle/{chain}/{batch_id}", headers=operator_headers())
    status = "✅" if data.get("settled") else "❌"
    print(f"{status} batch {batch_id} on {chain} settled={data.get('settled')}")


def cli_sign_batch(
    private_key: str,
    chain_id: int,
    verifying_contract: str,
    calls_json: str,
    nonce: int,
    deadline: Optional[int],
) -> Dict[str, Any]:
    """Encode and sign a batch; prints the /batch-meta-tx request body"""
    account = Account.from_key(private_key)
    calls = [MetaTransaction.from_dict(raw) for raw in json.loads(calls_json)]
    meta_tx_data = encode_meta_transactions(calls)
    deadline = deadline if deadline is not None else int(time.time()) + 3600
    signature = sign_batch(
        private_key, chain_id, verifying_contract, account.address, meta_tx_data, nonce, deadline
    )
    body = {
        "from": account.address,
        "metaTxs": [call.to_dict() for call in calls],
        "signature": signature,
        "nonce": nonce,
        "deadline": deadline,
    }
    print(json.dumps(body, indent=2))
    return body


def cli_derive_command_id(source_chain: str, tx_hash: str, log_index: int, payload: str):
    hashed = payload_hash(to_bytes(payload))
    print(f"payloadHash: {hashed}")
    print(f"commandId:   {derive_command_id(source_chain, tx_hash, log_index, hashed)}")


def serve():
    import uvicorn
    uvicorn.run(
        "relayhub.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower()
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="relayhub CLI")
    parser.add_argument("--base-url", default=None, help="relayhub API base URL")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("serve", help="Run the relayer API")
    subparsers.add_parser("status", help="Show relayer status")
    subparsers.add_parser("failed", help="List failed transactions")

    compensate_parser = subparsers.add_parser("compensate", help="Retry or refund a failed command")
    compensate_parser.add_argument("command_id", help="Command id (0x...)")
    compensate_parser.add_argument("--action", choices=["retry", "refund"], default="retry")

    unpaid_parser = subparsers.add_parser("unpaid", help="List batches whose gas was never debited")
    unpaid_parser.add_argument("--chain", help="Only this chain")

    settle_parser = subparsers.add_parser("settle", help="Retry the debit of an unpaid batch")
    settle_parser.add_argument("chain")
    settle_parser.add_argument("batch_id", type=int)

    sign_parser = subparsers.add_parser("sign-batch", help="Sign a gasless batch")
    sign_parser.add_argument("--key", required=True, help="User private key")
    sign_parser.add_argument("--chain-id", type=int, required=True)
    sign_parser.add_argument("--contract", required=True, help="Meta-transaction gateway address")
    sign_parser.add_argument("--calls", required=True, help='JSON list of {"to", "value", "data"}')
    sign_parser.add_argument("--nonce", type=int, default=0)
    sign_parser.add_argument("--deadline", type=int, help="Unix deadline (default: now + 1h)")
    sign_parser.add_argument("--submit", action="store_true", help="POST the signed batch")

    derive_parser = subparsers.add_parser("derive-command-id", help="Compute a command id")
    derive_parser.add_argument("source_chain")
    derive_parser.add_argument("tx_hash")
    derive_parser.add_argument("log_index", type=int)
    derive_parser.add_argument("payload", help="Payload as 0x hex")

    return parser


async def main(parser: argparse.ArgumentParser, args: argparse.Namespace):
    if not args.command:
        parser.print_help()
        return

    base_url = args.base_url or default_base_url()
    command = args.command.lower()

    if command == "status":
        await cli_status(base_url)

    elif command == "failed":
        await cli_failed(base_url)

    elif command == "compensate":
        await cli_compensate(base_url, args.command_id, args.action)

    elif command == "unpaid":
        await cli_unpaid(base_url, args.chain)

    elif command == "settle":
        await cli_settle(base_url, args.chain, args.batch_id)

    elif command == "sign-batch":
        body = cli_sign_batch(args.key, args.chain_id, args.contract, args.calls, args.nonce, args.deadline)
        if args.submit:
            result = await request("POST", base_url, "/batch-meta-tx", json=body)
            print(f"✅ batch {result['batchId']} successes={result['successes']} paid={result['paid']}")

    elif command == "derive-command-id":
        cli_derive_command_id(args.source_chain, args.tx_hash, args.log_index, args.payload)

    else:
        print(f"❌ Unknown command: {command}")
        parser.print_help()


def run():
    parser = build_parser()
    args = parser.parse_args()
    if args.command == "serve":
        serve()
    else:
        asyncio.run(main(parser, args))


if __name__ == "__main__":
    run()
