# dupkite/errors.py
# Error taxonomy shared by the services and the HTTP layer


class ReportError(Exception):
    """Base for failures that map onto a client-visible response"""

    status_code = 500
    default_message = "Грешка на сървъра."

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class SubmissionInvalid(ReportError):
    status_code = 400
    default_message = "Липсват задължителни полета или невалидни данни."


class RateLimited(ReportError):
    status_code = 429
    default_message = "Твърде много опити. Опитайте след няколко минути."


class BackendUnconfigured(ReportError):
    status_code = 503
    default_message = "Сървърът не е конфигуриран."


class BackendFailure(ReportError):
    status_code = 500
    default_message = "Грешка при запис. Опитайте отново."


class InvalidToken(ReportError):
    status_code = 400
    default_message = "Невалиден или изтекъл линк за потвърждение."


class Unauthorized(ReportError):
    status_code = 401
    default_message = "Unauthorized"


class ReportNotFound(ReportError):
    status_code = 404
    default_message = "Сигналът не е намерен."
