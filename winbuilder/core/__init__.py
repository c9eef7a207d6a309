# SPDX-License-Identifier: LGPL-3.0-or-later
# winbuilder/core/__init__.py
