#!/usr/bin/env python3
"""
enable_vonr_bool.py

Ensure every device configuration XML in a directory carries:

    <boolean name="vonr_enabled_bool" value="true"/>

as a direct child of the root element.

- If the root already has a child with @name="vonr_enabled_bool", its
  @value is set to "true" and the element is moved to the end of the root.
- Otherwise a new <boolean> element is appended to the root.

Files are rewritten IN PLACE (no XML declaration, pretty printed). Each
file is written to a temporary file next to it and then renamed over the
original, so a failure never leaves a half-written file behind.

Runs in dry-run mode by default: candidate files are only listed.

Usage:
    python3 enable_vonr_bool.py --xml-path DIR [--confirm] [--keep-going] [--debug]
Example:
    python3 enable_vonr_bool.py -x carrier_config/ --confirm
"""

import glob
import logging
import os
import shutil
import sys
import tempfile
from argparse import ArgumentParser
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from lxml import etree as ET

TARGET_NAME = "vonr_enabled_bool"
TARGET_TAG = "boolean"
TARGET_VALUE = "true"

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"

logger = logging.getLogger("enable_vonr_bool")


class ErrorPolicy(Enum):
    ABORT = "abort"
    CONTINUE = "continue"


@dataclass
class FileOutcome:
    path: Path
    action: str
    error: Optional[Exception] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def setup_logging(debug: bool = False) -> None:
    """Configure logging once, before any file is touched."""
    logging.basicConfig(format=LOG_FORMAT)
    if debug:
        logger.setLevel(logging.DEBUG)
        return
    name = os.environ.get("LOGLEVEL", "INFO").upper()
    level = int(name) if name.isdigit() else logging.getLevelName(name)
    if isinstance(level, int):
        logger.setLevel(level)
    else:
        logger.setLevel(logging.INFO)
        logger.warning(f"unknown LOGLEVEL {name!r}, using INFO")


def build_pattern(xml_path: str) -> str:
    # The directory is a prefix, not a pattern: "a[1]/" must match literally.
    return glob.escape(xml_path) + "*.xml"


def find_xml_files(xml_path: str) -> Iterator[Path]:
    """
    Lazily yield the files matching <xml_path>*.xml, in directory order.

    Dot files such as ".hidden.xml" are candidates too. A nonexistent
    directory yields nothing.
    """
    pattern = build_pattern(xml_path)
    logger.info(f"Searching files in glob path: {pattern!r}")
    for match in glob.iglob(pattern, include_hidden=True):
        yield Path(match)


def find_target(root: ET._Element) -> Optional[ET._Element]:
    """First direct child element of root with @name == TARGET_NAME, or None."""
    for child in root:
        # comments and processing instructions have non-string tags
        if not isinstance(child.tag, str):
            continue
        if child.get("name") == TARGET_NAME:
            return child
    return None


def make_target() -> ET._Element:
    el = ET.Element(TARGET_TAG)
    el.set("value", TARGET_VALUE)
    el.set("name", TARGET_NAME)
    return el


def write_tree(tree: ET._ElementTree, path: Path) -> None:
    """
    Serialize tree over path via a temporary file in the same directory.

    Symlinks are followed: the file they point to is replaced and the link
    stays. The original keeps its permission bits and, where allowed, its
    owner and group. If anything fails the temporary file is removed and the
    original is left untouched.
    """
    real = Path(os.path.realpath(path))
    st = os.stat(real)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{real.name}.", suffix=".tmp", dir=str(real.parent)
    )
    try:
        with os.fdopen(fd, "wb") as f:
            tree.write(
                f,
                encoding="UTF-8",
                xml_declaration=False,
                pretty_print=True,
            )
            f.flush()
            os.fsync(f.fileno())
        shutil.copymode(str(real), tmp_name)
        try:
            os.chown(tmp_name, st.st_uid, st.st_gid)
        except PermissionError as e:
            logger.warning(f"could not keep owner of {real}: {e}")
        os.replace(tmp_name, str(real))
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def inject_attribute(path: Path) -> str:
    """
    Set the VoNR flag in one file and rewrite it.

    Returns "updated" when an existing flag was changed, "injected" when a
    new element was added. Raises OSError or ET.XMLSyntaxError; the file on
    disk is unchanged in both cases.
    """
    logger.info(f"trying to open file: {path}")
    data = path.read_bytes()

    parser = ET.XMLParser(remove_blank_text=True)
    root = ET.fromstring(data, parser)

    el = find_target(root)
    if el is not None:
        logger.info("found existing 5G attribute, setting to true.")
        root.remove(el)
        el.set("value", TARGET_VALUE)
        action = "updated"
    else:
        logger.info("5G attribute is missing, injecting")
        el = make_target()
        action = "injected"

    # always last, even for an existing element
    root.append(el)

    write_tree(root.getroottree(), path)
    logger.info(f"Successfully saved {path}")
    return action


def process_files(
    paths: Iterable[Path],
    confirm: bool,
    policy: ErrorPolicy = ErrorPolicy.ABORT,
) -> List[FileOutcome]:
    """
    Run the injector (confirm) or just report (dry run) for each path.

    With ErrorPolicy.ABORT the first failure is re-raised after logging;
    files after it are not touched. With ErrorPolicy.CONTINUE every file is
    tried and failures are only recorded in the returned outcomes.
    """
    outcomes: List[FileOutcome] = []
    for path in paths:
        if not confirm:
            logger.info(f"Found potential target: {path.name}")
            outcomes.append(FileOutcome(path, "found"))
            continue

        try:
            action = inject_attribute(path)
        except (OSError, ET.XMLSyntaxError) as e:
            logger.error(f"failed processing {path}: {e}")
            outcomes.append(FileOutcome(path, "failed", e))
            if policy is ErrorPolicy.ABORT:
                raise
            continue
        outcomes.append(FileOutcome(path, action))
    return outcomes


def argparser():
    ap = ArgumentParser(
        description="Set vonr_enabled_bool to true in device configuration XML files."
    )
    ap.add_argument(
        "-x", "--xml-path",
        required=True,
        help="path to search phone config XML files (used as prefix of <path>*.xml)",
    )
    ap.add_argument(
        "-c", "--confirm",
        default=False,
        action="store_true",
        help="perform changes (runs in dry mode by default)",
    )
    ap.add_argument(
        "-k", "--keep-going",
        default=False,
        action="store_true",
        help="continue with the remaining files when one fails",
    )
    ap.add_argument(
        "--debug",
        default=False,
        action="store_true",
        help="print debug info",
    )
    return ap


def main(argv) -> int:
    args = argparser().parse_args(argv[1:])
    setup_logging(args.debug)

    if not args.confirm:
        logger.warning("Dry-run mode. To apply changes, use `--confirm`.")

    policy = ErrorPolicy.CONTINUE if args.keep_going else ErrorPolicy.ABORT

    try:
        outcomes = process_files(find_xml_files(args.xml_path), args.confirm, policy)
    except (OSError, ET.XMLSyntaxError):
        logger.error("aborting, remaining files were not processed")
        return 1

    if not outcomes:
        logger.error(
            f"[E] Found 0 xml files. Make sure the path {args.xml_path!r} is correct."
        )
        return 0

    failed = [o for o in outcomes if o.failed]
    if args.confirm:
        changed = len(outcomes) - len(failed)
        logger.info(f"Processed {len(outcomes)} XML files, {changed} rewritten, {len(failed)} failed.")
    else:
        logger.info(f"{len(outcomes)} candidate XML files found, nothing changed.")
    return 1 if failed else 0


def run() -> int:
    return main(sys.argv)


if __name__ == "__main__":
    sys.exit(main(sys.argv))
