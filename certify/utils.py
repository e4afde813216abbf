"""
Utility Functions Module

Common helper functions used across the Certify Batch application.
"""

import io
import json
import pandas as pd
from typing import List


CERTIFICATE_EXPORT_COLUMNS = [
    "row_index", "certificate_id", "subject_name", "email_recipient",
    "status", "verification_url", "email_sent", "created_at"
]


def certificates_to_dataframe(certificates: List) -> pd.DataFrame:
    """
    Build an export DataFrame from certificate records

    Args:
        certificates: Certificate model instances, in row order

    Returns:
        DataFrame with one row per certificate
    """
    records = []
    for certificate in certificates:
        records.append({
            "row_index": certificate.row_index,
            "certificate_id": certificate.id,
            "subject_name": certificate.subject_name,
            "email_recipient": certificate.email_recipient,
            "status": certificate.status,
            "verification_url": certificate.verification_url,
            "email_sent": bool(certificate.email_sent),
            "created_at": certificate.created_at.isoformat() if certificate.created_at else None,
        })
    return pd.DataFrame(records, columns=CERTIFICATE_EXPORT_COLUMNS)


def dataframe_to_csv(df: pd.DataFrame) -> str:
    output = io.StringIO()
    df.to_csv(output, index=False)
    return output.getvalue()


def calculate_file_size_mb(content: str) -> float:
    """
    Calculate file size in MB from string content

    Args:
        content: String content to measure

    Returns:
        File size in megabytes
    """
    size_bytes = len(content.encode('utf-8'))
    return round(size_bytes / (1024 * 1024), 2)


def format_run_stats(total_rows: int, generated: int, skipped: int, failed: int) -> dict:
    """
    Format run statistics for responses

    Args:
        total_rows: Rows in the dataset snapshot
        generated: Certificates produced
        skipped: Rows skipped for missing name or email
        failed: Rows whose rendering failed

    Returns:
        Dictionary with formatted statistics
    """
    return {
        "total_rows": total_rows,
        "certificates_generated": generated,
        "rows_skipped": skipped,
        "rows_failed": failed,
        "generated_percentage": round((generated / total_rows) * 100, 1) if total_rows > 0 else 0,
    }


def sse_event(event: str, data: dict) -> str:
    """Format one Server-Sent Events frame"""
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"
