class OtpServiceError(Exception):
    """Infrastructure failure, as opposed to an expected OTP outcome"""


class OtpStoreError(OtpServiceError):
    """The database failed or kept conflicting with concurrent writers"""


class SmsDeliveryError(OtpServiceError):
    """The SMS gateway could not be reached or answered with an error"""
