"""
Interfaces - Protocols for Dependency Injection.

Example:
    def run(calculator: CalculatorProtocol, context):
        for processed in calculator.steps(context):
            ...
"""

from .calculator_protocol import (
    CalculatorProtocol,
    CalculationResult,
    CalculationSteps,
)

__all__ = [
    'CalculatorProtocol',
    'CalculationResult',
    'CalculationSteps',
]
