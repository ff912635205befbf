#!/usr/bin/env python3

import re
import sys
import html
import time
import secrets
import logging
from pathlib import Path
from typing import Callable, Iterable, List, NamedTuple, Optional, Tuple
from icalendar import Calendar, Event, vText

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
log = logging.getLogger(__name__)

UID_DOMAIN = 'calendar.lkj.io'
FOLD_WIDTH = 75
CRLF = '\r\n'

# Removal order is part of the contract.
RECURRENCE_PROPERTIES = ('RRULE', 'RDATE', 'EXRULE', 'EXDATE', 'RECURRENCE-ID')
SANITIZED_PROPERTIES = ('DESCRIPTION', 'LOCATION')

RE_BR = re.compile(r'<br\s*/?>', re.IGNORECASE)
RE_TAG = re.compile(r'<[^>]+>')


class IcsFixError(Exception):
    pass


class InputError(IcsFixError):
    """Input file could not be read or is not a calendar."""


class OutputError(IcsFixError):
    """Output file could not be written."""


class NormalizationReport(NamedTuple):
    events: int
    recurrence_removed: int


class UidGenerator:
    """Builds a fresh UID for every event.

    Randomness and time are injected so the fallback path (no random bytes
    available) can be exercised. The trailing index keeps UIDs unique within
    a document even when the random segment is missing.
    """

    def __init__(self,
                 random_bytes: Callable[[int], bytes] = secrets.token_bytes,
                 clock: Callable[[], int] = time.time_ns,
                 domain: str = UID_DOMAIN):
        self.random_bytes = random_bytes
        self.clock = clock
        self.domain = domain
        self.fallbacks = 0

    def generate(self, index: int) -> str:
        timestamp = self.clock()
        try:
            token = self.random_bytes(8).hex()
        except Exception as e:
            self.fallbacks += 1
            if self.fallbacks == 1:
                log.warning(f"Random source failed for event {index}, using timestamp UIDs: {e}")
            return f"{timestamp}-{index}@{self.domain}"
        return f"{timestamp}-{token}-{index}@{self.domain}"


def strip_html(raw: str) -> str:
    text = html.unescape(raw)
    text = RE_BR.sub('\n', text)
    text = RE_TAG.sub('', text)
    return text.replace('\r', '')


def _occurrences(value) -> list:
    return value if isinstance(value, list) else [value]


def _sanitize_property(ev: Event, name: str) -> None:
    value = ev.get(name)
    if value is None:
        return

    changed = False
    cleaned = []
    for item in _occurrences(value):
        if '<' in str(item):
            item = vText(strip_html(str(item)))
            changed = True
        cleaned.append(item)

    if changed:
        ev[name] = cleaned if isinstance(value, list) else cleaned[0]


def normalize_events(events: Iterable[Event],
                     uid_generator: Optional[UidGenerator] = None) -> NormalizationReport:
    if uid_generator is None:
        uid_generator = UidGenerator()

    fallbacks_before = uid_generator.fallbacks
    count = 0
    removed = 0
    for index, ev in enumerate(events):
        # Assigning keeps an existing UID's position and collapses duplicates.
        ev['UID'] = vText(uid_generator.generate(index))

        for name in RECURRENCE_PROPERTIES:
            if name in ev:
                removed += len(_occurrences(ev[name]))
                del ev[name]

        for name in SANITIZED_PROPERTIES:
            _sanitize_property(ev, name)

        count += 1

    fallbacks = uid_generator.fallbacks - fallbacks_before
    if fallbacks > 1:
        log.warning(f"Random source failed for {fallbacks} of {count} events; timestamp UIDs used")

    return NormalizationReport(events=count, recurrence_removed=removed)


def top_level_events(cal: Calendar) -> List[Event]:
    return [c for c in cal.subcomponents if c.name == 'VEVENT']


def normalize_calendar(cal: Calendar,
                       uid_generator: Optional[UidGenerator] = None) -> NormalizationReport:
    return normalize_events(top_level_events(cal), uid_generator)


def parse_calendar(raw: bytes) -> Calendar:
    try:
        cal = Calendar.from_ical(raw)
    except Exception as e:
        raise InputError(f"Could not parse calendar: {e}") from e

    if getattr(cal, 'name', None) != 'VCALENDAR':
        raise InputError(f"Top-level component is not VCALENDAR: {getattr(cal, 'name', None)}")
    return cal


def read_calendar(file_path: Path) -> Calendar:
    try:
        with file_path.open('rb') as f:
            raw = f.read()
    except OSError as e:
        raise InputError(f"Could not read file: {file_path} - {e}") from e
    return parse_calendar(raw)


def fold_line(line: str, limit: int = FOLD_WIDTH, fold_sep: str = CRLF + ' ') -> str:
    # limit counts octets; continuation lines include their leading space.
    out = []
    size = 0
    for char in line:
        width = len(char.encode('utf-8'))
        if size + width > limit:
            out.append(fold_sep)
            size = 1
        out.append(char)
        size += width
    return ''.join(out)


def serialize_calendar(cal: Calendar, line_ending: str = CRLF,
                       fold_width: int = FOLD_WIDTH) -> bytes:
    if line_ending == CRLF and fold_width == FOLD_WIDTH:
        return cal.to_ical(sorted=False)

    out = []
    for line in cal.content_lines(sorted=False):
        if not line:
            continue
        out.append(fold_line(line, limit=fold_width, fold_sep=line_ending + ' ') + line_ending)
    return ''.join(out).encode('utf-8')


def write_calendar(cal: Calendar, file_path: Path) -> None:
    data = serialize_calendar(cal)
    tmp_path = file_path.with_name(file_path.name + '.tmp')
    try:
        with tmp_path.open('wb') as f:
            f.write(data)
        tmp_path.replace(file_path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise OutputError(f"Could not write file: {file_path} - {e}") from e


def fix_calendar_bytes(raw: bytes,
                       uid_generator: Optional[UidGenerator] = None) -> Tuple[bytes, NormalizationReport]:
    cal = parse_calendar(raw)
    report = normalize_calendar(cal, uid_generator)
    return serialize_calendar(cal), report


def process_file(input_path: Path, output_path: Path,
                 uid_generator: Optional[UidGenerator] = None) -> NormalizationReport:
    log.info(f"Processing file: {input_path.name}")
    cal = read_calendar(input_path)
    report = normalize_calendar(cal, uid_generator)
    write_calendar(cal, output_path)
    log.info(f"Written: {output_path}")
    return report


def main(argv: Optional[List[str]] = None):
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 2:
        print("Usage: ics-fixer <input.ics> <output.ics>", file=sys.stderr)
        sys.exit(2)

    input_path = Path(args[0]).expanduser()
    output_path = Path(args[1]).expanduser()

    try:
        report = process_file(input_path, output_path)
    except IcsFixError as e:
        log.error(str(e))
        sys.exit(1)

    log.info(f"Done. events={report.events}, recurrence_props_removed={report.recurrence_removed}")


if __name__ == "__main__":
    main()
