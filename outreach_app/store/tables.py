"""Table and field names in the outreach base."""

MEMBERS = "Members"
SERVICES = "Services"
ATTENDANCE = "Attendance"
EVANGELISM = "Evangelism"
FIRST_TIMERS = "First Timers Register"
RETURNERS = "Returners Register"
FOLLOW_UP_ASSIGNMENTS = "Follow-up Assignments"
VOLUNTEERS = "Volunteers"
MEMBER_PROGRAMS = "Member Programs"
PROGRAMS = "Programs"


class MemberFields:
    FIRST_NAME = "First Name"
    LAST_NAME = "Last Name"
    PHONE = "Phone"
    EMAIL = "Email"
    ADDRESS = "Address"
    GHANAPOST_CODE = "GhanaPost Code"
    STATUS = "Status"
    SOURCE = "Source"
    DATE_FIRST_CAPTURED = "Date First Captured"
    FOLLOW_UP_OWNER = "Follow-up Owner"
    FOLLOW_UP_STATUS = "Follow-up Status"
    FIRST_SERVICE_ATTENDED = "First Service Attended"
    MEMBERSHIP_COMPLETED = "Membership Completed"


class AssignmentFields:
    MEMBER = "Member"
    ASSIGNED_TO = "Assigned To"
    ASSIGNED_DATE = "Assigned Date"
    DUE_DATE = "Due Date"
    STATUS = "Status"
    NOTES = "Notes"


class VolunteerFields:
    NAME = "Name"
    ROLE = "Role"
    ACTIVE = "Active"
    CAPACITY = "Capacity"


class AttendanceFields:
    MEMBER = "Member"
    SERVICE = "Service"
    PRESENT = "Present?"
    SOURCE_FORM = "Source Form"


class ProgramFields:
    MEMBER = "Member"
    PROGRAM = "Program"
    PROGRAM_NAME = "Program Name"
    SESSION_COMPLETED = tuple(f"Session {n} Completed" for n in range(1, 5))
    SESSION_DATE = tuple(f"Session {n} Date" for n in range(1, 5))


class ProgramCatalogFields:
    NAME = "Name"


# Back-link field on every intake register table.
LINKED_MEMBER = "Linked Member"

INTAKE_TABLES = {
    "evangelism": EVANGELISM,
    "first_timer": FIRST_TIMERS,
    "returner": RETURNERS,
    "program_session": MEMBER_PROGRAMS,
}
