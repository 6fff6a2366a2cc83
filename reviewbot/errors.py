class ReviewError(Exception):
    """Base class for failures that carry a message safe to show the user."""

    user_message = "There was an error processing your request."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.user_message)
        if message:
            self.user_message = message


class ClassificationError(ReviewError):
    pass


class NoBucketRole(ClassificationError):
    user_message = "You must have a valid class role to open a review thread."


class AmbiguousBucket(ClassificationError):
    user_message = (
        "You have more than one class role. Wait until your roles are settled "
        "and try again."
    )

    def __init__(self, role_ids, message: str | None = None):
        super().__init__(message)
        self.role_ids = sorted(role_ids)


class NameLookupFailed(ReviewError):
    user_message = (
        "Failed to fetch your in-game name from the database. Please try again later."
    )


class NameNotSet(ReviewError):
    user_message = "You need to set your in-game name first."


class OperationInProgress(ReviewError):
    user_message = "A thread operation is already in progress. Please wait."


class PermissionDenied(ReviewError):
    user_message = (
        "You don't have permission to do that. Only the thread owner, class leads, "
        "or administrators can manage this review thread."
    )


class ReviewNotFound(ReviewError):
    user_message = "No active review thread found."


class MigrationError(ReviewError):
    user_message = "An error occurred while migrating the review thread."


class ThreadMissing(ReviewError):
    user_message = "The review thread no longer exists."
