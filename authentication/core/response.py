def standardized_response(success=True, message=None, data=None, error=None, error_code=None):
    """
    Build the response envelope shared by every API view:
    {success, message, data?, error?, error_code?}
    """
    response = {"success": success}
    if message is not None:
        response["message"] = message
    elif not success and isinstance(error, str):
        response["message"] = error
    if data is not None:
        response["data"] = data
    if error is not None:
        response["error"] = error
    if error_code is not None:
        response["error_code"] = error_code
    return response
