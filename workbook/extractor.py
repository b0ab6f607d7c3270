"""Extraction of monthly reservation counts from source workbooks."""
import calendar
import logging
import zipfile
from collections import defaultdict
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from openpyxl import load_workbook
from openpyxl.utils import column_index_from_string
from openpyxl.utils.exceptions import InvalidFileException

from sync.errors import ClassifiedError
from sync.models import UNRESOLVED_PARTITION, SourceRecord
from workbook.lock_reader import WorkbookHandle
from workbook.partitions import PartitionResolver

logger = logging.getLogger(__name__)


class ReservationExtractor:
    """Extractor turning workbook rows into per-month SourceRecords."""

    DATE_FORMATS = [
        '%Y-%m-%d',      # ISO 8601
        '%Y/%m/%d',      # Japanese locale default
        '%Y-%m-%d %H:%M:%S',
        '%Y/%m/%d %H:%M:%S',
        '%m/%d/%Y',
    ]

    def __init__(
        self,
        resolver: PartitionResolver,
        sheet_name: Optional[str] = None,
        date_column: str = 'A',
        count_column: str = 'CH',
        facility_column: Optional[str] = None,
        target_year: Optional[int] = None
    ):
        """
        Initialize the extractor.

        Args:
            resolver: Maps facility names to partition keys
            sheet_name: Worksheet to read; falls back to the first sheet
            date_column: Column letter holding the reservation date
            count_column: Column letter holding the reservation count
            facility_column: Optional column letter naming the facility of
                each row; when absent or empty the file name is used
            target_year: Only rows of this year are kept (default: current)
        """
        self.resolver = resolver
        self.sheet_name = sheet_name
        self.date_index = column_index_from_string(date_column) - 1
        self.count_index = column_index_from_string(count_column) - 1
        self.facility_index = (
            column_index_from_string(facility_column) - 1 if facility_column else None
        )
        self.target_year = target_year

    def extract(self, handle: WorkbookHandle) -> List[SourceRecord]:
        """
        Extract monthly reservation records from an open workbook.

        Rows whose partition cannot be resolved are logged and excluded. A
        file where every row is excluded yields an empty list.

        Args:
            handle: Open handle from LockAwareReader

        Returns:
            Records sorted by (partition, year, month)

        Raises:
            ClassifiedError: SOURCE-READ-FAILED if the workbook cannot be
                read, SOURCE-FORMAT if it is not a valid workbook
        """
        year = self.target_year or datetime.now().year

        try:
            workbook = load_workbook(handle.stream, read_only=True, data_only=True)
        except (zipfile.BadZipFile, InvalidFileException, KeyError) as e:
            raise ClassifiedError.source_format(handle.path, str(e)) from e
        except OSError as e:
            raise ClassifiedError.source_read_failed(handle.path, str(e)) from e

        try:
            worksheet = self._select_worksheet(workbook, handle.name)
            if worksheet is None:
                raise ClassifiedError.source_format(handle.path, 'workbook has no worksheets')
            daily_counts, excluded = self._collect_rows(worksheet, handle.name, year)
        finally:
            workbook.close()

        records = self._group_by_month(daily_counts)

        if excluded:
            logger.warning(
                f"Excluded {excluded} rows with unresolved facility from {handle.name}"
            )
        logger.info(f"Extracted {len(records)} monthly records from {handle.name}")
        return records

    def _select_worksheet(self, workbook, file_name: str):
        if not workbook.sheetnames:
            return None

        if self.sheet_name and self.sheet_name in workbook.sheetnames:
            return workbook[self.sheet_name]

        fallback = workbook.sheetnames[0]
        if self.sheet_name:
            logger.warning(
                f"Worksheet '{self.sheet_name}' not found in {file_name}; "
                f"available sheets: {', '.join(workbook.sheetnames)}. Using '{fallback}'"
            )
        return workbook[fallback]

    def _collect_rows(
        self,
        worksheet,
        file_name: str,
        year: int
    ) -> Tuple[Dict[Tuple[int, int, int], Dict[int, int]], int]:
        """
        Read (partition, year, month) -> {day: count} from the worksheet.

        Returns:
            Tuple of the collected counts and the number of excluded rows
        """
        collected: Dict[Tuple[int, int, int], Dict[int, int]] = defaultdict(dict)
        file_partition = self.resolver.resolve(file_name)
        excluded = 0

        for row in worksheet.iter_rows(values_only=True):
            row_date = self._parse_date(self._cell(row, self.date_index))
            count = self._parse_count(self._cell(row, self.count_index))
            if row_date is None or count is None:
                continue
            if row_date.year != year:
                continue

            partition = file_partition
            if self.facility_index is not None:
                facility = self._cell(row, self.facility_index)
                if facility not in (None, ''):
                    partition = self.resolver.resolve(str(facility))

            if partition == UNRESOLVED_PARTITION:
                excluded += 1
                logger.debug(
                    f"Unresolved facility in {file_name} for {row_date.isoformat()}"
                )
                continue

            collected[(partition, row_date.year, row_date.month)][row_date.day] = count

        return collected, excluded

    def _group_by_month(
        self,
        collected: Dict[Tuple[int, int, int], Dict[int, int]]
    ) -> List[SourceRecord]:
        records = []
        for (partition, year, month), by_day in sorted(collected.items()):
            days_in_month = calendar.monthrange(year, month)[1]
            counts = {
                f"{day:02d}": by_day.get(day, 0)
                for day in range(1, days_in_month + 1)
            }
            records.append(SourceRecord.build(partition, year, month, counts))
        return records

    @staticmethod
    def _cell(row: Tuple[Any, ...], index: int) -> Any:
        # read-only worksheets trim trailing empty cells
        return row[index] if index < len(row) else None

    def _parse_date(self, value: Any) -> Optional[date]:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if not isinstance(value, str) or not value.strip():
            return None

        for fmt in self.DATE_FORMATS:
            try:
                return datetime.strptime(value.strip(), fmt).date()
            except ValueError:
                continue

        return None

    @staticmethod
    def _parse_count(value: Any) -> Optional[int]:
        if isinstance(value, bool) or value is None:
            return None
        if isinstance(value, int):
            count = value
        elif isinstance(value, float):
            if not value.is_integer():
                return None
            count = int(value)
        elif isinstance(value, str) and value.strip().isdigit():
            count = int(value.strip())
        else:
            return None
        return count if count >= 0 else None
