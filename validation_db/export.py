"""CSV rendering for the annotation export."""

import csv
import io

from .annotations import EXPORT_COLUMNS

EXPORT_HEADER = ",".join(EXPORT_COLUMNS)


def export_to_csv(rows: list[dict]) -> str:
    """
    Render joined export rows as CSV.

    The header line is fixed and always present. Text fields (including the
    JSON-encoded structured columns) are quoted; the time column is not.
    """
    output = io.StringIO()
    output.write(EXPORT_HEADER + "\n")
    writer = csv.DictWriter(
        output,
        fieldnames=EXPORT_COLUMNS,
        extrasaction="ignore",
        quoting=csv.QUOTE_NONNUMERIC,
        lineterminator="\n",
    )
    for row in rows:
        flat = dict(row)
        if flat.get("annotation_time_seconds") is None:
            flat["annotation_time_seconds"] = ""
        writer.writerow(flat)
    return output.getvalue()
