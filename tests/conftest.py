import pytest
import sistercladelib as sc

###################################################################################################

@pytest.fixture
def treedata():
    """Newick strings for rooted, bifurcating trees in various layouts"""

    return {"simplestring" :
                    "(((s1:0.12500,s2:0.12500):0.25000,s3:0.12500):0.12500,(s4:0.12500,S5:0.12500):0.1);",

            "string_with_blanks" :
                    "(((s1:0.12500, s2:0.12500): 0.25000,s3: 0.12500): 0.12500, (s4:0.12500 ,S5:0.12500):0.1);",

            "string_with_newlines" :
                    """(((s1:0.12500,s2:0.12500):0.25000,
                                       s3:0.12500):0.12500,(s4:0.12500,S5:0.12500):0.1);""",

            "string_with_label" :
                    """((KL0F07689: 0.101408, KW081_13: 0.071355)0.95:0.01,
                       (SBC669_26: 0.009364, YAL016W: 0.014955)0.0507 : 0.124263);""",

            "string_with_comments" :
                    "((A[&rate=1.0]:0.1,B:0.2)[comment [nested]]:0.3,C:0.4);",

            "topology_only" :
                    "((((t1,t2),(t3,t4)),t5),((t6,(t7,t8)),(t9,t10)));"
            }

###################################################################################################

@pytest.fixture
def engine():
    return sc.SisterCladeEngine()
