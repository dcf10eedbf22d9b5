# -*- coding: utf-8 -*-
# Unit tests for tree parsing and file reading in sistercladelib.py
# Simple usage: python3 -m pytest test_treeparsing.py
# verbose output: python3 -m unittest -v test_treeparsing

import sistercladelib as sc
import unittest
import tempfile
import os

###################################################################################################
###################################################################################################

class TreeTestBase(unittest.TestCase):
    """Base class for test cases: contains tree data used by many tests"""

    treedata = {"simplestring" :
                        "(((s1:0.12500,s2:0.12500):0.25000,s3:0.12500):0.12500,(s4:0.12500,S5:0.12500):0.1);",

                "string_with_weird_newlines":
                         """((SIVCZ:0.19506,((HV1EL:0.07434000000000002,HV1Z2:0.05618000000000001)
                            :0.023249999999999993, HV1Z8:0.09005000000000002):0.03898999999999997):0.16576,
                            ((HV2BE:0.08623000000000003,HV2D1:0.08114999999999994):0.024009999999999976,
                            (SIVMK:0.008000000000000007,
                            SIVML:0.007839999999999958):0.036290000000000044):0.16576);""",

                "string_with_support" :
                         """((A:0.1,B:0.2)100:0.05,(C:0.3,(D:0.1,E:0.1)0.87:0.2)99.5:0.05);""",

                "complexstring" :
                         """((gi|13272696|gb|AF346973.1|:0.001343,(gi|13272836|gb|AF346983.1|:0.000510,
                            gi|13272822|gb|AF346982.1|:0.000993):0.000161):0.000026,(gi|13273158|gb|AF347006.1|:0.000499,
                            (gi|13272766|gb|AF346978.1|:0.000332,gi|13272808|gb|AF346981.1|:0.000242):0.000034):0.000081);"""
                }

########################################################################################
########################################################################################

class StringConstruction(TreeTestBase):
    """Tests whether Tree.from_string can parse various valid newick strings and return corresponding Tree object"""

    def test_parse_simplestring(self):
        """Can Tree.from_string parse simple newick string and return Tree object?"""
        treestring = self.treedata["simplestring"]
        self.assertTrue(isinstance(sc.Tree.from_string(treestring), sc.Tree))

    def test_parse_spuriousnewlines(self):
        """Can Tree.from_string parse newick string with newlines in unexpected places?"""
        treestring = self.treedata["string_with_weird_newlines"]
        mytree = sc.Tree.from_string(treestring)
        self.assertEqual(len(mytree.tips), 8)
        mytree.check_bifurcating()

    def test_parse_complexstring(self):
        """Can Tree.from_string parse leaf names containing '|' and '.'?"""
        treestring = self.treedata["complexstring"]
        mytree = sc.Tree.from_string(treestring)
        self.assertIn("gi|13272696|gb|AF346973.1|", mytree.leaves)
        self.assertEqual(len(mytree.leaves), 6)

    def test_return_correct(self):
        """Is Tree object correct when internal nodes carry support values?"""
        treestring = self.treedata["string_with_support"]
        mytree = sc.Tree.from_string(treestring)
        expected_leaves = {"A", "B", "C", "D", "E"}
        expected_intnodes = {0, 1, 2, 3}

        self.assertEqual(mytree.leaves, expected_leaves)
        self.assertEqual(mytree.intnodes, expected_intnodes)
        self.assertEqual(mytree.nodes, expected_leaves | expected_intnodes)
        self.assertEqual(mytree.children(0), [1, 2])
        self.assertEqual(mytree.children(1), ["A", "B"])
        self.assertEqual(mytree.children(2), ["C", 3])
        self.assertEqual(mytree.children(3), ["D", "E"])
        self.assertEqual(mytree.tips, ["A", "B", "C", "D", "E"])

    def test_label_before_semicolon(self):
        """Is a label on the root accepted?"""
        mytree = sc.Tree.from_string("((A,B)0.9,C)root;")
        self.assertEqual(mytree.children(0), [1, "C"])

########################################################################################
########################################################################################

class TreeIteration(TreeTestBase):
    """Tests iteration over file with several trees"""

    def test_read_correctly_newick(self):
        """Do I get the correct trees from a treefile"""

        # First: construct treefile
        fileobject = tempfile.NamedTemporaryFile(mode="wt", encoding="UTF-8", delete=False)
        filename = fileobject.name
        filehandle = fileobject.file
        treelist = []
        for treestring in self.treedata.values():
            treelist.append(sc.Tree.from_string(treestring))
            filehandle.write(treestring + "\n")
        filehandle.close()

        # Secondly: iterate over treefile, check that read trees correspond to written trees
        with sc.Newicktreefile(filename) as treefile:
            for i, tree in enumerate(treefile):
                self.assertEqual(tree.child_dict, treelist[i].child_dict)
                self.assertEqual(tree.tips, treelist[i].tips)
        self.assertEqual(i, len(treelist) - 1)

        # Clean up
        os.remove(filename)

    def test_several_trees_per_line(self):
        """Are trees separated by ';' read correctly when on same line?"""
        treefile = sc.Newicktreefile(filecontent="(A,B);(C,(D,E));((F,G),H);")
        ntips = [len(tree.tips) for tree in treefile]
        self.assertEqual(ntips, [2, 3, 3])

    def test_incomplete_last_tree(self):
        """Is trailing text without ';' ignored?"""
        treefile = sc.Newicktreefile(filecontent="(A,B);\n(C,D)\n")
        trees = list(treefile)
        self.assertEqual(len(trees), 1)

########################################################################################
########################################################################################

class BranchinfoConstruction(TreeTestBase):
    """Tests Tree.from_branchinfo"""

    def test_frombranchinfo(self):
        """Does from_branchinfo give same topology as from_string?"""
        t1 = sc.Tree.from_string(self.treedata["string_with_support"])
        parentlist = []
        childlist = []
        for parent in t1.internal_nodes:
            for kid in t1.children(parent):
                parentlist.append(parent)
                childlist.append(kid)
        t2 = sc.Tree.from_branchinfo(parentlist, childlist)
        self.assertEqual(t2.root, t1.root)
        self.assertEqual(t2.child_dict, t1.child_dict)
        self.assertEqual(t2.internal_nodes, t1.internal_nodes)
        self.assertEqual(set(t2.tips), set(t1.tips))

    def test_same_statistic(self):
        """Do trees built in different ways give the same sum of sister-clade differences?"""
        t1 = sc.Tree.from_string("((A,B),(C,(D,E)));")
        t2 = sc.Tree.from_branchinfo(["r", "r", "x", "x", "y", "y", "z", "z"],
                                     ["x", "y", "A", "B", "C", "z", "D", "E"])
        traits = {"A": 1, "B": 1, "C": 0, "D": 1, "E": 0}
        result1 = sc.sister_clade_differences(t1, traits)
        result2 = sc.sister_clade_differences(t2, traits)
        self.assertAlmostEqual(result1.sum_of_differences, result2.sum_of_differences)
        self.assertAlmostEqual(result1.normalized_sum, result2.normalized_sum)

########################################################################################
########################################################################################

class Is_bifurcation(TreeTestBase):

    def test_bifurcations(self):
        for treestring in self.treedata.values():
            mytree = sc.Tree.from_string(treestring)
            for intnode in mytree.intnodes:
                self.assertTrue(mytree.is_bifurcation(intnode))

    def test_trifurcations(self):
        mytree = sc.Tree.from_string("(A,B,(C,D));")
        self.assertFalse(mytree.is_bifurcation(mytree.root))
        self.assertRaises(sc.InvalidTreeType, mytree.check_bifurcating)

########################################################################################
########################################################################################

if __name__ == "__main__":
    unittest.main()
