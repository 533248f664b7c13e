#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""whatsrest: a REST bridge for per-account WhatsApp sessions"""
