#!/usr/bin/env python3
"""
Reports the layout of an ext2 disk image.

Usage:
    python main.py /absolute/path/to/disk.img

Prints general filesystem facts, per-group statistics with the free block
and inode ids found in each group's bitmaps, and the root directory entries.
Set FSA_LOG_LEVEL=DEBUG to trace every decode step on stderr.
"""

import logging
import os
import sys
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler

from errors import AnalysisError, InvocationError
from fsapi import Analysis, GroupReport, analyze, format_runs

USAGE = "usage: fsa /absolute/path/to/disk.img"

console = Console(highlight=False)
err_console = Console(stderr=True, highlight=False)


def general_section(analysis: Analysis) -> List[str]:
    sb = analysis.superblock
    return [
        f"Volume Name : {sb.volume_name}",
        f"Revision Level : {sb.rev_level}",
        f"Block Size in Bytes : {sb.block_size}",
        f"Total Number of Blocks : {sb.blocks_count}",
        f"Disk Size in Bytes : {sb.disk_size}",
        f"First Data Block : {sb.first_data_block}",
        f"Number of Free Blocks : {sb.free_blocks_count}",
        f"Total Number of Inodes : {sb.inodes_count}",
        f"Number of Free Inodes : {sb.free_inodes_count}",
        f"Maximum Number of Blocks Per Group : {sb.blocks_per_group}",
        f"Inode Size in Bytes : {sb.inode_record_size}",
        f"Number of Inodes Per Group : {sb.inodes_per_group}",
        f"Number of Inode Blocks Per Group : {sb.inode_blocks_per_group}",
        f"Number of Groups : {sb.group_count}",
    ]


def group_section(group: GroupReport) -> List[str]:
    gd = group.descriptor
    return [
        f"-Group {group.number} -",
        "Block IDs : %d-%d" % group.block_range,
        "Inode IDs : %d-%d" % group.inode_range,
        f"Block Bitmap Block ID : {gd.block_bitmap}",
        f"Inode Bitmap Block ID : {gd.inode_bitmap}",
        f"Inode Table Block ID : {gd.inode_table}",
        f"Number of Free Blocks : {gd.free_blocks_count}",
        f"Number of Free Inodes : {gd.free_inodes_count}",
        f"Number of Directories : {gd.used_dirs_count}",
        f"Free Block IDs : {format_runs(group.free_blocks)}",
        f"Free Inode IDs : {format_runs(group.free_inodes)}",
    ]


def root_section(analysis: Analysis) -> List[str]:
    root = analysis.root_inode
    lines = [
        f"Root Inode Size : {root.size}",
        f"Root Inode Links : {root.links_count}",
        f"Root Directory Block ID : {root.first_block}",
        "",
    ]
    for entry in analysis.root_entries:
        lines += [
            f"Inode: {entry.inode}",
            f"Entry Length : {entry.rec_len}",
            f"Name Length : {entry.name_len}",
            f"File Type : {entry.file_type}",
            f"Name : {entry.name}",
            "",
        ]
    return lines


def format_report(analysis: Analysis) -> List[List[str]]:
    """Returns the report sections; the first line of each is its header"""
    groups: List[str] = []
    for group in analysis.groups:
        groups += group_section(group) + [""]
    return [
        ["--General File System Information--"] + general_section(analysis) + [""],
        ["--Individual Group Information--"] + groups,
        ["--Root Directory Entries--"] + root_section(analysis),
    ]


def print_report(analysis: Analysis, out: Console = console):
    for header, *lines in format_report(analysis):
        out.print(header, style="bold", markup=False, emoji=False, soft_wrap=True)
        for line in lines:
            out.print(line, markup=False, emoji=False, soft_wrap=True)


def setup_logging():
    level = os.environ.get("FSA_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )


def main(argv: Optional[List[str]] = None, out: Console = console) -> int:
    if argv is None:
        argv = sys.argv[1:]
    setup_logging()

    try:
        if len(argv) != 1:
            raise InvocationError("Sorry, but something's not quite right about your invocation.")
        # the whole report is built before anything is printed
        analysis = analyze(argv[0])
    except InvocationError as e:
        err_console.print(str(e), markup=False)
        err_console.print(USAGE, markup=False)
        return 1
    except AnalysisError as e:
        err_console.print(f"[bold red]error:[/bold red] {type(e).__name__}: ", end="")
        err_console.print(str(e), markup=False)
        return 1

    print_report(analysis, out)
    return 0


if __name__ == "__main__":
    sys.exit(main())
