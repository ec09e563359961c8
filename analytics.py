import io
import math

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font

XLSX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'


def calculate_standing(present_count, total_sessions, target_percent=75.0, critical_percent=60.0):
    """
    Calculates a student's attendance standing and improvement plan.

    Args:
        present_count (int): Sessions marked present.
        total_sessions (int): Sessions with an attendance record.
        target_percent (float): The target attendance percentage (default 75.0).
        critical_percent (float): The critical attendance threshold (default 60.0).

    Returns:
        dict: A dictionary containing:
            - current_percent (float)
            - status (str): 'Good', 'Warning', 'Critical'
            - needed_to_recover (int): Classes to attend consecutively to reach target.
            - buffer_available (int): Classes that can be missed while staying at or above target.
            - message (str): A human-readable status message.
    """
    if total_sessions == 0:
        return {
            "current_percent": 0.0,
            "status": "Good",
            "needed_to_recover": 0,
            "buffer_available": 0,
            "message": "No sessions yet."
        }

    current_percent = (present_count / total_sessions) * 100

    if current_percent < critical_percent:
        status = "Critical"
        message = f"Critical: Attendance is below {critical_percent}%!"
    elif current_percent < target_percent:
        status = "Warning"
        message = f"Warning: Attendance is below {target_percent}%."
    else:
        status = "Good"
        message = f"Great! You are at or above {target_percent}%."

    # (present + x) / (total + x) >= target  =>  x >= (target * total - present) / (1 - target)
    target_rate = target_percent / 100.0
    needed_to_recover = 0
    if current_percent < target_percent:
        denominator = 1.0 - target_rate
        if denominator > 0:
            needed_to_recover = math.ceil(((total_sessions * target_rate) - present_count) / denominator)
        else:
            needed_to_recover = 999  # target of 100% can never be recovered

    # present / (total + x) >= target  =>  x <= present / target - total
    buffer_available = 0
    if current_percent > target_percent and target_rate > 0:
        buffer_available = max(0, math.floor(present_count / target_rate - total_sessions))

    return {
        "current_percent": round(current_percent, 1),
        "status": status,
        "needed_to_recover": needed_to_recover,
        "buffer_available": buffer_available,
        "message": message
    }


def build_attendance_workbook(session, rows):
    """
    Renders one session's attendance as an .xlsx file.

    Returns an in-memory stream positioned at the start, ready for send_file.
    """
    wb = Workbook()
    ws = wb.active
    ws.title = "Attendance"

    ws.append([f"Session: {session['title']}", f"Scheduled: {session['date_time']}"])
    ws.append([])

    ws.append(["Student", "Email", "Status", "Method", "Checked in at"])
    header_row = ws.max_row
    for cell in ws[header_row]:
        cell.font = Font(bold=True)
        cell.alignment = Alignment(horizontal='center')

    for row in rows:
        ws.append([
            row['student_name'],
            row['student_email'],
            row['status'].capitalize(),
            row['check_in_method'],
            row['timestamp']
        ])

    for column, width in zip('ABCDE', (28, 32, 12, 16, 22)):
        ws.column_dimensions[column].width = width

    in_memory_file = io.BytesIO()
    wb.save(in_memory_file)
    in_memory_file.seek(0)
    return in_memory_file
