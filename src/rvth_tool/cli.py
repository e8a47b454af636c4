from __future__ import annotations

import argparse
import logging
import typing
from pathlib import Path

from rvth_tool.apploader import AppLoaderError
from rvth_tool.exceptions import DirectoryError
from rvth_tool.nhcd import BankTable
from rvth_tool.verify import PartitionStatus, VerifyCommand, VerifyOptions

if typing.TYPE_CHECKING:
    from rvth_tool.verify import PartitionReport, VerifyReport


def bank_number_type(s: str) -> int:
    number = int(s, 0)
    if number < 1:
        raise argparse.ArgumentTypeError(f"bank numbers start at 1, got {number}")
    return number


def jobs_type(s: str) -> int:
    jobs = int(s)
    if jobs < 1:
        raise argparse.ArgumentTypeError(f"at least one job is needed, got {jobs}")
    return jobs


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rvth-tool", description="RVT-H Reader disk image tool")
    parser.add_argument("--verbose", "-v", help="Log per-group progress", action="store_true")

    subparser = parser.add_subparsers(dest="command", required=True)

    list_banks = subparser.add_parser("list-banks", help="List the banks of an RVT-H disk image")
    list_banks.add_argument("image", type=Path, help="Path to the disk image")

    verify = subparser.add_parser("verify", help="Verify the hashes and boot chain of a bank")
    verify.add_argument("image", type=Path, help="Path to the disk image")
    verify.add_argument("bank", type=bank_number_type, nargs="?", default=1, help="Bank number, starting at 1")
    verify.add_argument("--jobs", "-j", type=jobs_type, default=1, help="Threads used to verify cluster groups")
    verify.add_argument("--fail-fast", action="store_true", help="Stop each partition at its first bad cluster")
    build = verify.add_mutually_exclusive_group()
    build.add_argument(
        "--debug-build",
        dest="debug_build",
        action="store_const",
        const=True,
        help="Check DOL addresses against the debug ceiling",
    )
    build.add_argument(
        "--retail-build",
        dest="debug_build",
        action="store_const",
        const=False,
        help="Check DOL addresses against the retail ceiling",
    )

    return parser


def _text(raw: bytes) -> str:
    return raw.rstrip(b"\x00").decode("ascii", errors="replace")


def do_list_banks(args: argparse.Namespace) -> None:
    image: Path = args.image
    with image.open("rb") as f:
        try:
            table = BankTable.read(f)
        except DirectoryError as e:
            print(f"{image}: {e}")
            raise SystemExit(1)

    print(f"{len(table)} banks found")
    for bank in table:
        line = (
            f"Bank {bank.index + 1}: {bank.type_name:<6} {bank.disc_type.value:<24}"
            f" LBA 0x{bank.lba_start:08X} +0x{bank.lba_len:08X}"
        )
        if bank.timestamp is not None:
            line += f" {bank.timestamp}"
        if bank.problem is not None:
            line += f" ({bank.problem})"
        print(line)


def _print_boot_chain(prefix: str, apploader_error: AppLoaderError | None, boot_chain_error: str | None) -> None:
    if apploader_error is None:
        return
    if boot_chain_error is not None:
        print(f"{prefix}Boot chain unreadable: {boot_chain_error}")
    else:
        print(f"{prefix}Apploader: {apploader_error.name} ({apploader_error.description})")


def _print_partition(partition: PartitionReport) -> None:
    print(f"{partition}: {partition.status.value}")
    if partition.error is not None:
        print(f"    {partition.error}")

    if partition.status in (PartitionStatus.CLEAN, PartitionStatus.HASH_MISMATCH):
        print(f"    {partition.cluster_count} clusters, {len(partition.mismatches)} bad")
        for mismatch in partition.mismatches:
            print(f"    - {mismatch}")
        print(f"    H4: {'ok' if partition.h4_matches else 'MISMATCH'}")

    _print_boot_chain("    ", partition.apploader_error, partition.boot_chain_error)


def print_report(report: VerifyReport) -> None:
    if report.id6 is not None:
        print(f"Bank {report.bank_index + 1}: {_text(report.id6)} {_text(report.game_title)}")
    else:
        print(f"Bank {report.bank_index + 1}")
    if report.disc_type is not None:
        print(f"Disc type: {report.disc_type.value}")

    if report.fatal_error is not None:
        print(f"Error: {report.fatal_error}")
    else:
        _print_boot_chain("", report.apploader_error, report.boot_chain_error)
        for partition in report.partitions:
            _print_partition(partition)

    if report.is_clean:
        print(f"Bank {report.bank_index + 1} is clean.")
    else:
        print(f"Bank {report.bank_index + 1} has errors.")


def do_verify(args: argparse.Namespace) -> None:
    options = VerifyOptions(
        max_workers=args.jobs,
        stop_on_first_error=args.fail_fast,
        debug_build=args.debug_build,
    )
    with args.image.open("rb") as f:
        report = VerifyCommand(options).verify(f, args.bank - 1)

    print_report(report)
    if not report.is_clean:
        raise SystemExit(1)


def handle_args(args) -> None:
    if args.command == "list-banks":
        do_list_banks(args)
    elif args.command == "verify":
        do_verify(args)
    else:
        raise ValueError(f"Unknown command: {args.command}")


def main():
    args = create_parser().parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    handle_args(args)
