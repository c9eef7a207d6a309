# SPDX-License-Identifier: LGPL-3.0-or-later
# winbuilder/cli/__init__.py
