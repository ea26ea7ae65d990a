# -*- coding: utf-8 -*-
"""replstream test suite."""
