"""
Unified API response envelope
"""
from flask import jsonify
from typing import Any, Optional, Dict


class ApiResponse:
    """API response builder"""

    @staticmethod
    def success(data: Any = None, message: str = 'OK') -> tuple:
        """
        Success response (200)

        Args:
            data: Response payload
            message: Human readable message

        Returns:
            (Flask response, status code)
        """
        response = {
            'success': True,
            'message': message,
        }
        if data is not None:
            response['data'] = data
        return jsonify(response), 200

    @staticmethod
    def created(data: Any = None, message: str = 'Created') -> tuple:
        """Created response (201)"""
        response = {
            'success': True,
            'message': message,
        }
        if data is not None:
            response['data'] = data
        return jsonify(response), 201

    @staticmethod
    def accepted(data: Any = None, message: str = 'Accepted') -> tuple:
        """Accepted response (202) for work continuing in the background"""
        response = {
            'success': True,
            'message': message,
        }
        if data is not None:
            response['data'] = data
        return jsonify(response), 202

    @staticmethod
    def error(
        message: str,
        code: int = 400,
        error_code: str = 'BAD_REQUEST',
        details: Optional[Dict] = None
    ) -> tuple:
        """
        Error response

        Args:
            message: Error message
            code: HTTP status code
            error_code: Machine readable error code
            details: Extra error information

        Returns:
            (Flask response, status code)
        """
        response = {
            'success': False,
            'error': {
                'code': error_code,
                'message': message,
            }
        }
        if details:
            response['error']['details'] = details
        return jsonify(response), code

    @staticmethod
    def not_found(message: str = 'Resource not found') -> tuple:
        """404 response"""
        return ApiResponse.error(message, 404, 'NOT_FOUND')

    @staticmethod
    def unauthorized(message: str = 'Unauthorized') -> tuple:
        """401 response"""
        return ApiResponse.error(message, 401, 'UNAUTHORIZED')

    @staticmethod
    def forbidden(message: str = 'Forbidden') -> tuple:
        """403 response"""
        return ApiResponse.error(message, 403, 'FORBIDDEN')

    @staticmethod
    def conflict(message: str, error_code: str = 'CONFLICT') -> tuple:
        """409 response"""
        return ApiResponse.error(message, 409, error_code)

    @staticmethod
    def validation_error(message: str, details: Optional[Dict] = None) -> tuple:
        """Validation error response"""
        return ApiResponse.error(message, 400, 'VALIDATION_ERROR', details)

    @staticmethod
    def server_error(message: str = 'Internal server error') -> tuple:
        """500 response"""
        return ApiResponse.error(message, 500, 'INTERNAL_ERROR')


def success_response(data: Any = None, message: str = 'OK') -> tuple:
    """Shortcut for ApiResponse.success"""
    return ApiResponse.success(data, message)


def error_response(
    message: str,
    code: int = 400,
    error_code: str = 'BAD_REQUEST',
    details: Optional[Dict] = None
) -> tuple:
    """Shortcut for ApiResponse.error"""
    return ApiResponse.error(message, code, error_code, details)
