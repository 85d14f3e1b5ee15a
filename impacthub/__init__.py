# -*- coding: utf-8 -*-
"""impact-hub：金融新闻去重、ImpactRank 打分、分通道推送。"""

__version__ = "0.3.0"
