from __future__ import annotations

from sqlalchemy import Boolean, Column, Float, Index, Integer, String, Text, UniqueConstraint, text

from db import Base


class IdCounter(Base):
    __tablename__ = "id_counters"

    key = Column(String, primary_key=True)
    nextValue = Column(Integer, nullable=False, default=1)


class User(Base):
    __tablename__ = "users"

    userId = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True, index=True)
    fullName = Column(Text, nullable=False, default="")
    role = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="ACTIVE", index=True)
    # Links a login to the profile it acts as (resignation, panel membership, clearance approver).
    employeeId = Column(String, nullable=False, default="", index=True)
    candidateId = Column(String, nullable=False, default="", index=True)
    lastLoginAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Role(Base):
    __tablename__ = "roles"

    roleCode = Column(String, primary_key=True)
    roleName = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="ACTIVE")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Permission(Base):
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("permType", "permKey", name="uq_permissions_type_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    permType = Column(String, nullable=False)
    permKey = Column(String, nullable=False)
    rolesCsv = Column(Text, nullable=False, default="")
    enabled = Column(Boolean, nullable=False, default=True)
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Setting(Base):
    __tablename__ = "settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False, default="")
    type = Column(String, nullable=False, default="")
    scope = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Session(Base):
    __tablename__ = "sessions"

    sessionId = Column(String, primary_key=True)
    tokenHash = Column(String, nullable=False, unique=True, index=True)
    tokenPrefix = Column(String, nullable=False, default="", index=True)
    userId = Column(String, nullable=False, default="", index=True)
    email = Column(String, nullable=False, default="")
    role = Column(String, nullable=False, default="", index=True)
    issuedAt = Column(Text, nullable=False, default="")
    expiresAt = Column(Text, nullable=False, default="")
    lastSeenAt = Column(Text, nullable=False, default="")
    revokedAt = Column(Text, nullable=False, default="")
    revokedBy = Column(String, nullable=False, default="")


class AuditLog(Base):
    __tablename__ = "audit_log"

    logId = Column(String, primary_key=True)
    entityType = Column(String, nullable=False, default="", index=True)
    entityId = Column(String, nullable=False, default="", index=True)
    action = Column(String, nullable=False, default="", index=True)
    fromState = Column(String, nullable=False, default="")
    toState = Column(String, nullable=False, default="")
    stageTag = Column(String, nullable=False, default="", index=True)
    remark = Column(Text, nullable=False, default="")
    actorUserId = Column(String, nullable=False, default="", index=True)
    actorRole = Column(String, nullable=False, default="", index=True)
    actorEmail = Column(Text, nullable=False, default="")
    at = Column(Text, nullable=False, default="", index=True)
    correlationId = Column(String, nullable=False, default="", index=True)
    beforeJson = Column(Text, nullable=False, default="")
    afterJson = Column(Text, nullable=False, default="")
    metaJson = Column(Text, nullable=False, default="")


# --- Directory (profile + org structure read model) ---


class Department(Base):
    __tablename__ = "departments"

    departmentId = Column(String, primary_key=True)
    name = Column(Text, nullable=False, default="")
    headPositionId = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="ACTIVE")


class Position(Base):
    __tablename__ = "positions"

    positionId = Column(String, primary_key=True)
    title = Column(Text, nullable=False, default="")
    departmentId = Column(String, nullable=False, default="", index=True)


class PositionAssignment(Base):
    __tablename__ = "position_assignments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    positionId = Column(String, nullable=False, index=True)
    employeeId = Column(String, nullable=False, index=True)
    isActive = Column(Boolean, nullable=False, default=True)
    startAt = Column(Text, nullable=False, default="")
    endAt = Column(Text, nullable=False, default="")


class Employee(Base):
    __tablename__ = "employees"

    employeeId = Column(String, primary_key=True)
    employeeNumber = Column(String, nullable=False, unique=True, index=True)
    fullName = Column(Text, nullable=False, default="")
    workEmail = Column(Text, nullable=False, default="")
    personalEmail = Column(Text, nullable=False, default="")
    departmentId = Column(String, nullable=False, default="", index=True)
    positionId = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="ACTIVE", index=True)
    startDate = Column(Text, nullable=False, default="")
    contractSigningDate = Column(Text, nullable=False, default="")
    candidateId = Column(String, nullable=False, default="", index=True)
    # NULL for profiles not created from an offer; unique otherwise.
    offerId = Column(String, nullable=True, unique=True)
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class AppraisalRecord(Base):
    __tablename__ = "appraisal_records"

    recordId = Column(String, primary_key=True)
    employeeId = Column(String, nullable=False, index=True)
    cycle = Column(String, nullable=False, default="")
    totalScore = Column(Float, nullable=True)
    ratingLabel = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="", index=True)


class Document(Base):
    __tablename__ = "documents"

    documentId = Column(String, primary_key=True)
    ownerId = Column(String, nullable=False, default="", index=True)
    documentType = Column(String, nullable=False, default="")
    fileName = Column(Text, nullable=False, default="")
    mimeType = Column(String, nullable=False, default="")
    sizeBytes = Column(Integer, nullable=False, default=0)
    storagePath = Column(Text, nullable=False, default="")
    uploadedAt = Column(Text, nullable=False, default="")
    uploadedBy = Column(String, nullable=False, default="")


# --- Recruitment ---


class Candidate(Base):
    __tablename__ = "candidates"

    candidateId = Column(String, primary_key=True)
    fullName = Column(Text, nullable=False, default="")
    email = Column(Text, nullable=False, default="")
    phone = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")


class Requisition(Base):
    __tablename__ = "requisitions"

    requisitionId = Column(String, primary_key=True)
    title = Column(Text, nullable=False, default="")
    departmentId = Column(String, nullable=False, default="")
    location = Column(Text, nullable=False, default="")
    hiringManagerId = Column(String, nullable=False, default="")
    openings = Column(Integer, nullable=False, default=1)
    publishStatus = Column(String, nullable=False, default="draft", index=True)
    postingDate = Column(Text, nullable=False, default="")
    expiryDate = Column(Text, nullable=False, default="")
    hiredCount = Column(Integer, nullable=False, default=0)
    progress = Column(Integer, nullable=False, default=0)
    latestRemark = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Application(Base):
    __tablename__ = "applications"
    __table_args__ = (UniqueConstraint("candidateId", "requisitionId", name="uq_applications_candidate_requisition"),)

    applicationId = Column(String, primary_key=True)
    candidateId = Column(String, nullable=False, index=True)
    requisitionId = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="submitted", index=True)
    currentStage = Column(String, nullable=False, default="screening")
    progress = Column(Integer, nullable=False, default=0)
    consentAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="", index=True)
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class ApplicationHistory(Base):
    __tablename__ = "application_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    applicationId = Column(String, nullable=False, index=True)
    oldStage = Column(String, nullable=False, default="")
    newStage = Column(String, nullable=False, default="")
    oldStatus = Column(String, nullable=False, default="")
    newStatus = Column(String, nullable=False, default="")
    changedBy = Column(String, nullable=False, default="")
    changedAt = Column(Text, nullable=False, default="")
    remark = Column(Text, nullable=False, default="")


class Referral(Base):
    __tablename__ = "referrals"
    __table_args__ = (UniqueConstraint("candidateId", "referringEmployeeId", name="uq_referrals_candidate_employee"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    candidateId = Column(String, nullable=False, index=True)
    referringEmployeeId = Column(String, nullable=False)
    role = Column(Text, nullable=False, default="")
    level = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")


class Interview(Base):
    __tablename__ = "interviews"
    __table_args__ = (
        Index(
            "uq_interviews_active_application_stage",
            "applicationId",
            "stage",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
    )

    interviewId = Column(String, primary_key=True)
    applicationId = Column(String, nullable=False, index=True)
    stage = Column(String, nullable=False)
    scheduledDate = Column(Text, nullable=False, default="")
    method = Column(String, nullable=False, default="")
    videoLink = Column(Text, nullable=False, default="")
    panelJson = Column(Text, nullable=False, default="[]")
    status = Column(String, nullable=False, default="scheduled", index=True)
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class InterviewFeedback(Base):
    __tablename__ = "interview_feedback"
    __table_args__ = (UniqueConstraint("interviewId", "interviewerId", name="uq_feedback_interview_interviewer"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    interviewId = Column(String, nullable=False, index=True)
    interviewerId = Column(String, nullable=False)
    score = Column(Float, nullable=False, default=0)
    comments = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class Offer(Base):
    __tablename__ = "offers"

    offerId = Column(String, primary_key=True)
    applicationId = Column(String, nullable=False, unique=True)
    candidateId = Column(String, nullable=False, index=True)
    role = Column(Text, nullable=False, default="")
    grossSalary = Column(Float, nullable=False, default=0)
    signingBonus = Column(Float, nullable=False, default=0)
    benefitsJson = Column(Text, nullable=False, default="[]")
    conditions = Column(Text, nullable=False, default="")
    insurances = Column(Text, nullable=False, default="")
    content = Column(Text, nullable=False, default="")
    deadline = Column(Text, nullable=False, default="")
    applicantResponse = Column(String, nullable=False, default="pending")
    finalStatus = Column(String, nullable=False, default="pending")
    candidateSignedAt = Column(Text, nullable=False, default="")
    respondedAt = Column(Text, nullable=False, default="")
    finalizedAt = Column(Text, nullable=False, default="")
    finalizedBy = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


# --- Onboarding ---


class Onboarding(Base):
    __tablename__ = "onboardings"

    onboardingId = Column(String, primary_key=True)
    employeeId = Column(String, nullable=False, unique=True)
    startDate = Column(Text, nullable=False, default="")
    contractSigningDate = Column(Text, nullable=False, default="")
    completed = Column(Boolean, nullable=False, default=False, index=True)
    completedAt = Column(Text, nullable=False, default="")
    cancelledAt = Column(Text, nullable=False, default="")
    cancelReason = Column(Text, nullable=False, default="")
    lastReminderAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class OnboardingTask(Base):
    __tablename__ = "onboarding_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    onboardingId = Column(String, nullable=False, index=True)
    orderNo = Column(Integer, nullable=False, default=0)
    name = Column(Text, nullable=False, default="")
    department = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="pending")
    deadline = Column(Text, nullable=False, default="")
    completedAt = Column(Text, nullable=False, default="")
    documentId = Column(String, nullable=False, default="")
    notes = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


# --- Offboarding ---


class TerminationRequest(Base):
    __tablename__ = "termination_requests"

    terminationId = Column(String, primary_key=True)
    employeeId = Column(String, nullable=False, index=True)
    initiator = Column(String, nullable=False, default="employee")
    reason = Column(Text, nullable=False, default="")
    employeeComments = Column(Text, nullable=False, default="")
    hrComments = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="pending", index=True)
    terminationDate = Column(Text, nullable=False, default="")
    finalSettlementJson = Column(Text, nullable=False, default="")
    revocationLogJson = Column(Text, nullable=False, default="[]")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class ClearanceChecklist(Base):
    __tablename__ = "clearance_checklists"

    checklistId = Column(String, primary_key=True)
    terminationId = Column(String, nullable=False, unique=True)
    employeeId = Column(String, nullable=False, index=True)
    equipmentJson = Column(Text, nullable=False, default="[]")
    cardReturned = Column(Boolean, nullable=False, default=False)
    completed = Column(Boolean, nullable=False, default=False, index=True)
    completedAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class ClearanceItem(Base):
    __tablename__ = "clearance_items"
    __table_args__ = (UniqueConstraint("checklistId", "department", name="uq_clearance_items_checklist_department"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    checklistId = Column(String, nullable=False, index=True)
    orderNo = Column(Integer, nullable=False, default=0)
    department = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    assignedTo = Column(String, nullable=False, default="")
    comments = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class ClearanceReminder(Base):
    __tablename__ = "clearance_reminders"
    __table_args__ = (UniqueConstraint("checklistId", "department", name="uq_clearance_reminders_checklist_department"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    checklistId = Column(String, nullable=False, index=True)
    department = Column(String, nullable=False)
    sentCount = Column(Integer, nullable=False, default=0)
    firstSentAt = Column(Text, nullable=False, default="")
    lastSentAt = Column(Text, nullable=False, default="")
    escalated = Column(Boolean, nullable=False, default=False)
    escalatedAt = Column(Text, nullable=False, default="")
    # Bumped by every sweep write; writers compare-and-set on it.
    version = Column(Integer, nullable=False, default=0)


# --- Notifications ---


class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"

    id = Column(String, primary_key=True)
    type = Column(String, nullable=False, index=True)
    recipient = Column(Text, nullable=False, default="")
    contextJson = Column(Text, nullable=False, default="{}")
    status = Column(String, nullable=False, default="PENDING", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    lastError = Column(Text, nullable=False, default="")
    nextAttemptAt = Column(Text, nullable=False, default="", index=True)
    entityType = Column(String, nullable=False, default="")
    entityId = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    sentAt = Column(Text, nullable=False, default="")
