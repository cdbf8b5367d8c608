#!/usr/bin/env python3
# Prompt Module
# Interactive questions asked through InquirerPy

from InquirerPy import inquirer
from InquirerPy.base.control import Choice


class Prompter:
    """Thin wrapper over InquirerPy so callers can swap in scripted answers"""

    def select(self, message, choices, default=None):
        """choices is a list of (value, label) pairs"""
        return inquirer.select(
            message=message,
            choices=[Choice(value, name=label) for value, label in choices],
            default=default,
        ).execute()

    def text(self, message, default="", validate=None, invalid_message="Invalid input"):
        return inquirer.text(
            message=message,
            default=default,
            validate=validate,
            invalid_message=invalid_message,
        ).execute()

    def secret(self, message, validate=None, invalid_message="Invalid input"):
        return inquirer.secret(
            message=message,
            validate=validate,
            invalid_message=invalid_message,
        ).execute()

    def confirm(self, message, default=False):
        return inquirer.confirm(message=message, default=default).execute()
