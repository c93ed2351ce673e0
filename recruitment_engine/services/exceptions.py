"""
Recruitment Engine Domain Exceptions

Raised for failures a caller must handle explicitly. Expected outcomes
(invalid coupon, duplicate enrollment, no eligible subject) are returned as
typed results instead and never raised.
"""


class RecruitmentError(Exception):
    """Base exception for recruitment engine errors"""
    pass


class GenerationExhaustedError(RecruitmentError):
    """Raised when every coupon code candidate collided within the attempt budget"""
    pass


class DuplicateCodeError(RecruitmentError):
    """Raised when issuing a coupon under a code that already exists"""

    def __init__(self, code: str):
        super().__init__(f"Coupon code already exists: {code}")
        self.code = code


class CaptureAttemptsExhaustedError(RecruitmentError):
    """Raised when capture is requested after the attempt budget ran out"""
    pass


class EnrollmentNotScreenedError(RecruitmentError):
    """Raised when storing a template that was not cleared by a duplicate check"""
    pass


class RecruitmentNotFoundError(RecruitmentError):
    """Raised when a seed recruitment id does not exist"""

    def __init__(self, recruitment_id: int):
        super().__init__(f"Seed recruitment not found: {recruitment_id}")
        self.recruitment_id = recruitment_id


class RecruitmentAlreadySentError(RecruitmentError):
    """Raised when a seed recruitment message was already marked as sent"""

    def __init__(self, recruitment_id: int):
        super().__init__(f"Seed recruitment already sent: {recruitment_id}")
        self.recruitment_id = recruitment_id


class SubjectNotFoundError(RecruitmentError):
    """Raised when a subject (survey) id does not exist"""

    def __init__(self, subject_id: str):
        super().__init__(f"Subject not found: {subject_id}")
        self.subject_id = subject_id
