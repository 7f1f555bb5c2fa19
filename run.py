#!/usr/bin/env python3
"""Backup runner"""
from drivebackup.cli import run

if __name__ == '__main__':
    run()
